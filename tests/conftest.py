import threading
from unittest.mock import MagicMock

import pytest
from kubernetes.client import CoreV1Event, V1ObjectMeta, V1ObjectReference


def make_event(name, namespace="ns1", count=6, reason="BackOff", kind="Pod"):
    return CoreV1Event(
        metadata=V1ObjectMeta(name=f"{name}.17a2b3c4", namespace=namespace),
        involved_object=V1ObjectReference(kind=kind, name=name, namespace=namespace),
        reason=reason,
        count=count,
        type="Warning",
    )


@pytest.fixture
def cluster():
    """Cluster client fake: no events, every pod exists."""
    client = MagicMock()
    client.list_warning_events.return_value = []
    client.get_pod.return_value = MagicMock()
    return client


@pytest.fixture
def reporter():
    return MagicMock()


@pytest.fixture
def release():
    """Unblocks slow fake API calls at teardown so the scan thread can finish."""
    gate = threading.Event()
    yield gate
    gate.set()
