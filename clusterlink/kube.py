"""Kubernetes-backed inventory and stores.

Clusters, ClusterNodes and NodeConfigs are cluster-scoped custom resources of
``kosmos.io/v1alpha1``. The allocation table lives in a ConfigMap so that its
resource version guards against concurrent writers.
"""

import json
import threading

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from clusterlink.allocator import AllocationTable
from clusterlink.exceptions import AllocationConflict, KubernetesError, PublishConflict
from clusterlink.logging_config import get_logger
from clusterlink.models.cluster import Cluster, ClusterCondition
from clusterlink.models.node import ClusterNode
from clusterlink.models.nodeconfig import SPEC_CHANGED_ANNOTATION, NodeConfig

logger = get_logger(__name__)

GROUP = "kosmos.io"
VERSION = "v1alpha1"
PLURAL_CLUSTERS = "clusters"
PLURAL_CLUSTER_NODES = "clusternodes"
PLURAL_NODE_CONFIGS = "nodeconfigs"

MERGE_PATCH = "application/merge-patch+json"
TABLE_KEY = "table"


def load_config(kubeconfig: str | None = None) -> None:
    """Load in-cluster credentials, falling back to a kubeconfig file."""
    if kubeconfig is None:
        try:
            config.load_incluster_config()
            logger.debug("Using in-cluster Kubernetes configuration")
            return
        except ConfigException:
            pass
    try:
        config.load_kube_config(config_file=kubeconfig)
    except (ConfigException, OSError) as e:
        raise KubernetesError(
            f"Failed to load Kubernetes configuration: {e}",
            details="Set KUBECONFIG or pass --kubeconfig",
        )


def _api_error(e: ApiException, action: str) -> KubernetesError:
    logger.error(f"Kubernetes API error while trying to {action}: {e.status} {e.reason}")
    return KubernetesError(f"Failed to {action}: {e.status} {e.reason}", details=e.body)


class KubeInventory:
    """Reads clusters and nodes from custom resources and writes cluster conditions."""

    def __init__(self, api: client.CustomObjectsApi | None = None):
        self.api = api or client.CustomObjectsApi()

    def _list(self, plural: str) -> list[dict]:
        try:
            result = self.api.list_cluster_custom_object(group=GROUP, version=VERSION, plural=plural)
        except ApiException as e:
            raise _api_error(e, f"list {plural}")
        return result.get("items", [])

    def get_clusters(self) -> list[Cluster]:
        return [Cluster.from_resource(obj) for obj in self._list(PLURAL_CLUSTERS)]

    def get_nodes(self) -> list[ClusterNode]:
        return [ClusterNode.from_resource(obj) for obj in self._list(PLURAL_CLUSTER_NODES)]

    def set_condition(self, cluster_name: str, condition: ClusterCondition) -> None:
        """Insert or replace one status condition of a Cluster resource."""
        try:
            obj = self.api.get_cluster_custom_object(
                group=GROUP, version=VERSION, plural=PLURAL_CLUSTERS, name=cluster_name
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Cluster '{cluster_name}' disappeared before its condition was set")
                return
            raise _api_error(e, f"read cluster '{cluster_name}'")

        cluster = Cluster.from_resource(obj)
        if not cluster.status.set_condition(condition):
            return
        conditions = [c.model_dump(by_alias=True, mode="json") for c in cluster.status.conditions]
        body = {
            "metadata": {"resourceVersion": obj["metadata"].get("resourceVersion")},
            "status": {"conditions": conditions},
        }
        try:
            self.api.patch_cluster_custom_object_status(
                group=GROUP,
                version=VERSION,
                plural=PLURAL_CLUSTERS,
                name=cluster_name,
                body=body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            if e.status == 409:
                raise PublishConflict(f"Cluster '{cluster_name}' changed while its condition was set")
            raise _api_error(e, f"update conditions of cluster '{cluster_name}'")


class KubeNodeConfigStore:
    """NodeConfig custom resources.

    Spec and status are separate subresources: the spec is written with the
    resource version read beforehand, ``lastChangeTime`` is then merged into
    the status on its own, which never touches the agent's ``lastSyncTime``.
    """

    def __init__(self, api: client.CustomObjectsApi | None = None):
        self.api = api or client.CustomObjectsApi()

    def get(self, name: str) -> NodeConfig | None:
        try:
            obj = self.api.get_cluster_custom_object(
                group=GROUP, version=VERSION, plural=PLURAL_NODE_CONFIGS, name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise _api_error(e, f"read NodeConfig '{name}'")
        return NodeConfig.from_resource(obj)

    def list(self) -> list[NodeConfig]:
        try:
            result = self.api.list_cluster_custom_object(group=GROUP, version=VERSION, plural=PLURAL_NODE_CONFIGS)
        except ApiException as e:
            raise _api_error(e, "list NodeConfigs")
        configs = [NodeConfig.from_resource(obj) for obj in result.get("items", [])]
        return sorted(configs, key=lambda c: c.name)

    def set_change_time(self, name: str, last_change_time) -> None:
        """Merge ``lastChangeTime`` into the status subresource.

        Raises:
            PublishConflict: The write failed; the spec annotation still
                records the change, so a retry repairs the status
        """
        body = {"status": {"lastChangeTime": last_change_time.isoformat()}}
        try:
            self.api.patch_cluster_custom_object_status(
                group=GROUP,
                version=VERSION,
                plural=PLURAL_NODE_CONFIGS,
                name=name,
                body=body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            raise PublishConflict(
                f"Status of NodeConfig '{name}' was not updated ({e.status} {e.reason})",
                details="The spec is written; lastChangeTime is set on the next attempt",
            )

    def create(self, node_config: NodeConfig) -> NodeConfig:
        """Create the resource, then record ``lastChangeTime``.

        Raises:
            PublishConflict: The resource already exists or its status write failed
        """
        node_config = node_config.model_copy()
        if node_config.spec_changed_at is None:
            node_config.spec_changed_at = node_config.status.last_change_time
        body = node_config.to_resource()
        body.pop("status", None)
        try:
            created = self.api.create_cluster_custom_object(
                group=GROUP, version=VERSION, plural=PLURAL_NODE_CONFIGS, body=body
            )
        except ApiException as e:
            if e.status == 409:
                raise PublishConflict(f"NodeConfig '{node_config.name}' already exists")
            raise _api_error(e, f"create NodeConfig '{node_config.name}'")
        if node_config.status.last_change_time is not None:
            self.set_change_time(node_config.name, node_config.status.last_change_time)
        return NodeConfig.from_resource(created)

    def patch(self, name: str, spec_patch: dict, last_change_time, resource_version: str | None) -> NodeConfig:
        """Merge-patch the spec with its change annotation, then record ``lastChangeTime``.

        Raises:
            PublishConflict: The resource changed or vanished since it was read,
                or the status write failed
        """
        metadata = {"annotations": {SPEC_CHANGED_ANNOTATION: last_change_time.isoformat()}}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        body = {"metadata": metadata, "spec": spec_patch}
        try:
            patched = self.api.patch_cluster_custom_object(
                group=GROUP,
                version=VERSION,
                plural=PLURAL_NODE_CONFIGS,
                name=name,
                body=body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            if e.status in (404, 409):
                raise PublishConflict(f"NodeConfig '{name}' changed concurrently ({e.status} {e.reason})")
            raise _api_error(e, f"patch NodeConfig '{name}'")
        self.set_change_time(name, last_change_time)
        return NodeConfig.from_resource(patched)

    def delete(self, name: str) -> bool:
        try:
            self.api.delete_cluster_custom_object(
                group=GROUP, version=VERSION, plural=PLURAL_NODE_CONFIGS, name=name
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise _api_error(e, f"delete NodeConfig '{name}'")
        return True


class KubeAllocationStore:
    """Allocation table kept as JSON in a ConfigMap."""

    def __init__(self, name: str, namespace: str, api: client.CoreV1Api | None = None):
        self.name = name
        self.namespace = namespace
        self.api = api or client.CoreV1Api()

    def _read(self):
        try:
            return self.api.read_namespaced_config_map(name=self.name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _api_error(e, f"read ConfigMap '{self.namespace}/{self.name}'")

    @staticmethod
    def _table(config_map) -> AllocationTable:
        raw = (config_map.data or {}).get(TABLE_KEY) if config_map is not None else None
        return AllocationTable.model_validate_json(raw) if raw else AllocationTable()

    def load(self) -> AllocationTable:
        return self._table(self._read())

    def save(self, table: AllocationTable, expected_version: int) -> None:
        """Write the table if the stored one is still at ``expected_version``.

        Raises:
            AllocationConflict: Another writer got there first
        """
        current = self._read()
        stored = self._table(current)
        if stored.version != expected_version:
            raise AllocationConflict(
                f"Allocation table is at version {stored.version}, expected {expected_version}"
            )

        data = {TABLE_KEY: json.dumps(table.model_dump(mode="json"), sort_keys=True)}
        try:
            if current is None:
                body = client.V1ConfigMap(
                    metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace), data=data
                )
                self.api.create_namespaced_config_map(namespace=self.namespace, body=body)
            else:
                body = client.V1ConfigMap(
                    metadata=client.V1ObjectMeta(
                        name=self.name,
                        namespace=self.namespace,
                        resource_version=current.metadata.resource_version,
                    ),
                    data=data,
                )
                self.api.replace_namespaced_config_map(name=self.name, namespace=self.namespace, body=body)
        except ApiException as e:
            if e.status == 409:
                raise AllocationConflict("Allocation table was saved concurrently")
            raise _api_error(e, f"write ConfigMap '{self.namespace}/{self.name}'")
        logger.debug(f"Saved allocation table version {table.version}")


class InventoryWatcher:
    """Watches Cluster and ClusterNode resources and notifies the reconciler."""

    def __init__(self, reconciler, api: client.CustomObjectsApi | None = None, timeout_seconds: int = 30):
        self.reconciler = reconciler
        self.api = api or client.CustomObjectsApi()
        self.timeout_seconds = timeout_seconds
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    def start(self) -> None:
        for plural in (PLURAL_CLUSTERS, PLURAL_CLUSTER_NODES):
            thread = threading.Thread(target=self._watch, args=(plural,), daemon=True, name=f"watch-{plural}")
            thread.start()
            self._threads.append(thread)
            logger.info(f"Started {plural} watch thread")

    def stop(self) -> None:
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=5)

    def _watch(self, plural: str) -> None:
        while not self._stop_event.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(
                    self.api.list_cluster_custom_object,
                    group=GROUP,
                    version=VERSION,
                    plural=plural,
                    timeout_seconds=self.timeout_seconds,
                ):
                    if self._stop_event.is_set():
                        break
                    name = event["object"].get("metadata", {}).get("name", "")
                    self.reconciler.notify(f"{event['type']} {plural}/{name}")
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{plural} watch resource version expired, restarting")
                    continue
                logger.error(f"{plural} watch error: {e}")
                self._stop_event.wait(5)
            finally:
                w.stop()
        logger.info(f"{plural} watch stopped")

