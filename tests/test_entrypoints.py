from unittest.mock import MagicMock, patch

import pytest

from conftest import make_event
import pod_restarts_check
from pod_restarts_check import khcheck_main

ENV = {
    "KH_REPORTING_URL": "http://kuberhealthy/externalCheckStatus",
    "KH_RUN_UUID": "abc-123",
    "POD_NAMESPACE": "ns1",
    "MAX_FAILURES_ALLOWED": "5",
}


@pytest.fixture
def post():
    with patch("requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)
        yield mock_post


def _sent(post):
    return post.call_args.kwargs["json"]


def test_khcheck_reports_failure_and_exits_zero(cluster, post):
    cluster.list_warning_events.return_value = [make_event("p1", count=6)]

    with patch.object(pod_restarts_check, "create_kube_client", return_value=cluster):
        assert khcheck_main(ENV) == 0

    assert _sent(post) == {
        "OK": False,
        "Errors": ["Found: 6 `BackOff` events for pod: p1 in namespace: ns1"],
    }


def test_khcheck_reports_success(cluster, post):
    with patch.object(pod_restarts_check, "create_kube_client", return_value=cluster):
        assert khcheck_main(ENV) == 0

    assert _sent(post) == {"OK": True, "Errors": []}


def test_khcheck_reporting_error_exits_two(cluster, post):
    post.return_value = MagicMock(status_code=503)

    with patch.object(pod_restarts_check, "create_kube_client", return_value=cluster):
        assert khcheck_main(ENV) == 2


def test_khcheck_bad_config_is_reported(post):
    with patch.object(pod_restarts_check, "create_kube_client") as create:
        assert khcheck_main({**ENV, "MAX_FAILURES_ALLOWED": "lots"}) == 0

    create.assert_not_called()
    sent = _sent(post)
    assert sent["OK"] is False
    assert "MAX_FAILURES_ALLOWED" in sent["Errors"][0]


def test_khcheck_client_error_exits_one(post):
    with patch.object(pod_restarts_check, "create_kube_client", side_effect=RuntimeError("no config")):
        assert khcheck_main(ENV) == 1

    post.assert_not_called()


def _ansible_module(**params):
    module = MagicMock()
    module.params = {
        "kubeconfig": None,
        "context": None,
        "namespace": "ns1",
        "max_failures_allowed": 5,
        "timeout": 30,
        **params,
    }
    return module


def test_ansible_module_success(cluster):
    module = _ansible_module()

    with patch("ansible.module_utils.basic.AnsibleModule", return_value=module), \
            patch.object(pod_restarts_check, "create_kube_client", return_value=cluster) as create:
        pod_restarts_check.run_module()

    create.assert_called_once_with(None, None)
    cluster.list_warning_events.assert_called_once_with("ns1")
    module.exit_json.assert_called_once_with(changed=False, ok=True, errors=[])


def test_ansible_module_failure(cluster):
    cluster.list_warning_events.return_value = [make_event("p1", count=9)]
    module = _ansible_module(context="prod")

    with patch("ansible.module_utils.basic.AnsibleModule", return_value=module), \
            patch.object(pod_restarts_check, "create_kube_client", return_value=cluster) as create:
        pod_restarts_check.run_module()

    create.assert_called_once_with(None, "prod")
    assert module.fail_json.call_args.kwargs["errors"] == [
        "Found: 9 `BackOff` events for pod: p1 in namespace: ns1",
    ]


def test_ansible_module_connect_error():
    module = _ansible_module()

    with patch("ansible.module_utils.basic.AnsibleModule", return_value=module), \
            patch.object(pod_restarts_check, "create_kube_client", side_effect=RuntimeError("boom")):
        pod_restarts_check.run_module()

    assert "Failed to connect" in module.fail_json.call_args.kwargs["msg"]
    module.exit_json.assert_not_called()
