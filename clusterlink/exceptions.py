"""Custom exceptions for clusterlink."""


class ClusterLinkError(Exception):
    """Base exception for all clusterlink errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class AllocationError(ClusterLinkError):
    """Base exception for CIDR allocation failures."""

    def __init__(self, message: str, cluster: str, details: str = None):
        self.cluster = cluster
        super().__init__(message, details)


class PoolExhausted(AllocationError):
    """Raised when no disjoint block of the required size remains in a pool."""

    pass


class ConflictingOverride(AllocationError):
    """Raised when a global CIDR map override collides with another allocation."""

    def __init__(self, message: str, cluster: str, other: str | None = None, details: str = None):
        self.other = other
        super().__init__(message, cluster, details)


class TopologyConflict(ClusterLinkError):
    """Raised when two clusters declare overlapping pod or service CIDRs.

    This is a configuration error: retrying the same inventory cannot succeed.
    """

    def __init__(self, clusters: tuple[str, str], cidrs: tuple[str, str], details: str = None):
        self.clusters = clusters
        self.cidrs = cidrs
        message = (
            f"Clusters '{clusters[0]}' and '{clusters[1]}' declare overlapping CIDRs "
            f"{cidrs[0]} and {cidrs[1]}"
        )
        super().__init__(message, details)


class PublishConflict(ClusterLinkError):
    """Raised when a write must be retried.

    Either a concurrent writer changed the record between read and write, or
    only the first of two dependent writes landed.
    """

    pass


class AllocationConflict(PublishConflict):
    """Raised when the allocation table was saved by someone else since it was read."""

    pass


class ValidationError(ClusterLinkError):
    """Exception raised for validation errors."""

    pass


class ConfigurationError(ClusterLinkError):
    """Exception raised for configuration errors."""

    pass


class KubernetesError(ClusterLinkError):
    """Exception raised for Kubernetes API errors."""

    pass
