"""Tests for error handling across components."""

import logging
import re

import pytest

from clusterlink.exceptions import (
    AllocationConflict,
    AllocationError,
    ClusterLinkError,
    ConfigurationError,
    ConflictingOverride,
    KubernetesError,
    PoolExhausted,
    PublishConflict,
    TopologyConflict,
    ValidationError,
)
from clusterlink.inventory import InventoryError, InventoryValidationError
from clusterlink.logging_config import CONSOLE_HANDLER_NAME, get_logger, setup_logging, show_progress


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = ConfigurationError("Invalid configuration", "Check the VNI settings")

    assert error.message == "Invalid configuration"
    assert error.details == "Check the VNI settings"
    assert "Invalid configuration" in str(error)
    assert "Check the VNI settings" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ValidationError("Invalid input")

    assert error.message == "Invalid input"
    assert error.details is None
    assert str(error) == "Invalid input"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from ClusterLinkError."""
    assert issubclass(AllocationError, ClusterLinkError)
    assert issubclass(PoolExhausted, AllocationError)
    assert issubclass(ConflictingOverride, AllocationError)
    assert issubclass(TopologyConflict, ClusterLinkError)
    assert issubclass(PublishConflict, ClusterLinkError)
    assert issubclass(AllocationConflict, PublishConflict)
    assert issubclass(KubernetesError, ClusterLinkError)
    assert issubclass(ValidationError, ClusterLinkError)
    assert issubclass(ConfigurationError, ClusterLinkError)
    assert issubclass(InventoryError, ClusterLinkError)
    assert issubclass(InventoryValidationError, InventoryError)


def test_allocation_errors_name_the_cluster():
    """Test that allocator errors carry the affected cluster."""
    error = PoolExhausted("No free block", "east")
    assert error.cluster == "east"

    override = ConflictingOverride("Override overlaps", "east", other="west")
    assert override.cluster == "east"
    assert override.other == "west"


def test_topology_conflict_names_both_clusters_and_cidrs():
    """Test that the conflict message names both clusters and CIDRs."""
    error = TopologyConflict(("a", "b"), ("10.0.0.0/16", "10.0.0.0/16"))

    assert error.clusters == ("a", "b")
    assert "'a'" in error.message and "'b'" in error.message
    assert "10.0.0.0/16" in error.message


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_with_verbose():
    """Test that verbose mode sets DEBUG level."""
    setup_logging(verbose=True)

    assert logging.getLogger().level == logging.DEBUG


def test_logging_with_file(tmp_path):
    """Test that logging can write to a file."""
    log_file = tmp_path / "clusterlink.log"
    setup_logging(level="INFO", log_file=log_file)

    get_logger("test").info("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "hello from the test" in log_file.read_text()


def test_logging_rejects_unknown_level():
    """Test that an unknown level name is a configuration error."""
    with pytest.raises(ConfigurationError, match="LOUD"):
        setup_logging(level="LOUD")


def test_log_file_timestamps_are_utc(tmp_path):
    """Test that log lines carry UTC timestamps."""
    log_file = tmp_path / "clusterlink.log"
    setup_logging(level="DEBUG", log_file=log_file)

    get_logger("clusterlink.test").debug("pass done")
    for handler in logging.getLogger().handlers:
        handler.flush()

    line = log_file.read_text().strip()
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z DEBUG clusterlink.test \| pass done$", line)


def test_show_progress_raises_console_to_info():
    """Test that long-running commands see INFO records on the console."""
    setup_logging(level="WARNING")

    show_progress()

    root = logging.getLogger()
    console = next(h for h in root.handlers if h.get_name() == CONSOLE_HANDLER_NAME)
    assert root.level == logging.INFO
    assert console.level == logging.INFO


def test_show_progress_keeps_verbose_console():
    setup_logging(verbose=True)

    show_progress()

    assert logging.getLogger().level == logging.DEBUG
    assert all(h.level == logging.DEBUG for h in logging.getLogger().handlers)
