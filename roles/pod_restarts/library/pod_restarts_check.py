#!/usr/bin/python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Pod restarts health check for Kubernetes.

Scans the cluster's Warning events for pods stuck in a restart loop
(``BackOff`` events counted more often than allowed), drops pods that no
longer exist, and reports a single pass/fail verdict before the check's
deadline.

The check runs either as a Kuberhealthy external check (``pod-restarts-check``
console script, configured from the environment) or as an Ansible module
from the control node. All API calls are read-only (list/get).
"""

from __future__ import annotations

DOCUMENTATION = r"""
---
module: pod_restarts_check
short_description: Fail when pods keep restarting
version_added: "1.0.0"
description:
  - Lists Warning events in a namespace (or across all namespaces) and
    flags every pod with more C(BackOff) events than allowed.
  - Pods that have been deleted since the event was recorded are ignored.
  - The scan must finish within I(timeout) seconds or the check fails.
  - Completely read-only. All API calls are list/get operations.
options:
  kubeconfig:
    description: Path to the kubeconfig file. Uses in-cluster config when unusable.
    type: path
  context:
    description: Kubeconfig context to use. Defaults to current context.
    type: str
  namespace:
    description: Namespace to scan. Omit for all namespaces (requires a cluster role).
    type: str
    default: ""
  max_failures_allowed:
    description: Highest BackOff event count still considered healthy.
    type: int
    default: 10
  timeout:
    description: Seconds the scan may take before the check fails.
    type: int
    default: 600
requirements:
  - kubernetes (Python package, same requirement as kubernetes.core collection)
author:
  - kub-health contributors
"""

EXAMPLES = r"""
- name: Check for restarting pods across the cluster
  pod_restarts_check:
  register: restarts

- name: Check a single namespace with a stricter threshold
  pod_restarts_check:
    namespace: my-app
    max_failures_allowed: 3
    timeout: 60
"""

RETURN = r"""
ok:
  description: Whether the check passed.
  type: bool
  returned: always
errors:
  description: Failure reasons, one per restarting pod or scan error.
  type: list
  elements: str
  returned: always
  sample:
    - "Found: 12 `BackOff` events for pod: api-7d9f in namespace: my-app"
"""

import logging
import os
import sys
import threading
from concurrent.futures import Future, InvalidStateError, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Mapping, Protocol

logger = logging.getLogger("pod_restarts_check")

DEFAULT_MAX_FAILURES_ALLOWED = 10
DEFAULT_CHECK_TIMEOUT = timedelta(minutes=10)
DEADLINE_SAFETY_MARGIN = timedelta(seconds=5)

WARNING_FIELD_SELECTOR = "type=Warning"
WATCHED_KIND = "Pod"
RESTART_REASON = "BackOff"
TIMEOUT_MESSAGE = "Failed to complete Pod Restart check in time! Timeout was reached."

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


# =====================================================================
# Errors
# =====================================================================

class PodRestartsCheckError(Exception):
    """Base class for all check errors."""


class TransportError(PodRestartsCheckError):
    """The Kubernetes API failed for a reason other than not-found."""


class ConfigurationError(PodRestartsCheckError):
    """A setting could not be parsed."""


class ReportError(PodRestartsCheckError):
    """The verdict could not be delivered."""


def is_not_found(exc: BaseException) -> bool:
    """True when *exc* says the requested object does not exist.

    ApiException carries the HTTP status; other backends only give us the
    message text, so "not found" in the message is accepted as well.
    """
    from kubernetes.client.exceptions import ApiException

    if isinstance(exc, ApiException) and exc.status == 404:
        return True
    return "not found" in str(exc).lower()


# =====================================================================
# Models
# =====================================================================

@dataclass(frozen=True)
class PodKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class SuspectRegistry:
    """Pods currently believed to be restarting too often, with their message."""

    def __init__(self) -> None:
        self._suspects: dict[PodKey, str] = {}

    def add(self, key: PodKey, message: str) -> None:
        self._suspects[key] = message

    def discard(self, key: PodKey) -> None:
        self._suspects.pop(key, None)

    def keys(self) -> list[PodKey]:
        return list(self._suspects)

    def messages(self) -> list[str]:
        return list(self._suspects.values())

    def as_dict(self) -> dict[PodKey, str]:
        return dict(self._suspects)

    def __contains__(self, key: object) -> bool:
        return key in self._suspects

    def __iter__(self) -> Iterator[PodKey]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._suspects)


@dataclass(frozen=True)
class CheckConfig:
    namespace: str = ""
    max_failures_allowed: int = DEFAULT_MAX_FAILURES_ALLOWED
    check_timeout: timedelta = DEFAULT_CHECK_TIMEOUT
    kubeconfig: str | None = None
    context: str | None = None

    @property
    def all_namespaces(self) -> bool:
        return not self.namespace


@dataclass(frozen=True)
class Verdict:
    ok: bool
    errors: list[str] = field(default_factory=list)

    @classmethod
    def success(cls) -> Verdict:
        return cls(ok=True)

    @classmethod
    def failure(cls, reasons: list[str]) -> Verdict:
        if not reasons:
            raise ValueError("a failure verdict needs at least one reason")
        return cls(ok=False, errors=list(reasons))

    def to_dict(self) -> dict[str, Any]:
        return {"OK": self.ok, "Errors": list(self.errors)}


class CheckState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"
    REPORTED = "reported"


@dataclass
class PipelineOutcome:
    registry: SuspectRegistry
    error: TransportError | None = None


# =====================================================================
# Configuration
# =====================================================================

def _parse_max_failures(raw: str | None) -> int:
    if raw is None or raw == "":
        return DEFAULT_MAX_FAILURES_ALLOWED
    try:
        value = int(raw.strip(), 10)
    except ValueError as exc:
        raise ConfigurationError(f"error converting MAX_FAILURES_ALLOWED: {raw!r} is not an integer") from exc
    if not INT32_MIN <= value <= INT32_MAX:
        raise ConfigurationError(f"error converting MAX_FAILURES_ALLOWED: {value} is out of the 32-bit range")
    return value


def _check_timeout_from_deadline(raw: str | None, now: datetime) -> timedelta:
    # Kuberhealthy passes the run deadline as unix seconds.
    if not raw:
        logger.info("No check deadline set, using default of %s", DEFAULT_CHECK_TIMEOUT)
        return DEFAULT_CHECK_TIMEOUT
    try:
        deadline = datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        logger.info("There was an issue getting the check deadline: %s", exc)
        return DEFAULT_CHECK_TIMEOUT
    return deadline - (now + DEADLINE_SAFETY_MARGIN)


def load_config(environ: Mapping[str, str] | None = None, now: datetime | None = None) -> CheckConfig:
    """Build the check configuration from Kuberhealthy's environment."""
    env = os.environ if environ is None else environ
    now = now or datetime.now(timezone.utc)

    namespace = env.get("POD_NAMESPACE", "")
    if namespace:
        logger.info("Looking for pods in namespace: %s", namespace)
    else:
        logger.info("Looking for pods across all namespaces, this requires a cluster role")

    check_timeout = _check_timeout_from_deadline(env.get("KH_CHECK_RUN_DEADLINE"), now)
    logger.info("Check time limit set to: %s", check_timeout)

    return CheckConfig(
        namespace=namespace,
        max_failures_allowed=_parse_max_failures(env.get("MAX_FAILURES_ALLOWED")),
        check_timeout=check_timeout,
        kubeconfig=env.get("KUBECONFIG") or None,
    )


# =====================================================================
# Cluster access
# =====================================================================

class PodEventSource(Protocol):
    def list_warning_events(self, namespace: str) -> list[Any]: ...

    def get_pod(self, namespace: str, name: str) -> Any: ...


class ClusterClient:
    """The two CoreV1 calls the check needs."""

    def __init__(self, core_api: Any) -> None:
        self.core = core_api

    def list_warning_events(self, namespace: str) -> list[Any]:
        if namespace:
            result = self.core.list_namespaced_event(namespace, field_selector=WARNING_FIELD_SELECTOR)
        else:
            result = self.core.list_event_for_all_namespaces(field_selector=WARNING_FIELD_SELECTOR)
        return list(result.items or [])

    def get_pod(self, namespace: str, name: str) -> Any:
        return self.core.read_namespaced_pod(name=name, namespace=namespace)


def create_kube_client(kubeconfig: str | None = None, context: str | None = None) -> ClusterClient:
    from kubernetes import client, config
    from kubernetes.config.config_exception import ConfigException

    try:
        config.load_kube_config(config_file=kubeconfig, context=context)
    except ConfigException:
        config.load_incluster_config()
    return ClusterClient(client.CoreV1Api(client.ApiClient()))


# =====================================================================
# Event scan
# =====================================================================

def _event_subject(event: Any) -> tuple[str, str, str]:
    obj = event.involved_object
    meta_ns = event.metadata.namespace if event.metadata is not None else None
    return obj.kind or "", obj.namespace or meta_ns or "", obj.name or ""


def restart_message(count: int, name: str, namespace: str) -> str:
    return f"Found: {count} `{RESTART_REASON}` events for pod: {name} in namespace: {namespace}"


def scan_events(client: PodEventSource, namespace: str, max_failures_allowed: int,
                registry: SuspectRegistry) -> SuspectRegistry:
    """Add every pod with more BackOff events than allowed to *registry*."""
    logger.info("Checking for pod %s events for all pods in the namespace: %s", RESTART_REASON, namespace or "<all>")
    try:
        events = client.list_warning_events(namespace)
    except Exception as exc:
        raise TransportError(str(exc)) from exc

    if events:
        logger.info("Found %d `Warning` events in the namespace: %s", len(events), namespace or "<all>")

    for event in events:
        kind, pod_ns, pod_name = _event_subject(event)
        count = event.count or 0
        if kind != WATCHED_KIND or event.reason != RESTART_REASON or count <= max_failures_allowed:
            continue
        message = restart_message(count, pod_name, pod_ns)
        logger.info(message)
        registry.add(PodKey(pod_ns, pod_name), message)

    return registry


# =====================================================================
# Reconciliation
# =====================================================================

def reconcile_suspects(client: PodEventSource, registry: SuspectRegistry) -> SuspectRegistry:
    """Drop suspects whose pod no longer exists."""
    for key in registry.keys():
        try:
            client.get_pod(key.namespace, key.name)
        except Exception as exc:
            if is_not_found(exc):
                logger.info("Bad pod %s no longer exists, removing it from the suspects", key)
                registry.discard(key)
                continue
            logger.info("Error getting bad pod %s: %s", key, exc)
            raise TransportError(str(exc)) from exc
    return registry


# =====================================================================
# Checker
# =====================================================================

class PodRestartsChecker:
    """Runs the scan against a deadline and reports one verdict."""

    def __init__(self, cfg: CheckConfig, client: PodEventSource, reporter: Any) -> None:
        self.cfg = cfg
        self.client = client
        self.reporter = reporter
        self.state = CheckState.IDLE

    def run(self) -> Verdict:
        if self.state is not CheckState.IDLE:
            raise RuntimeError(f"checker already ran (state: {self.state.value})")

        logger.info("Running Pod Restarts checker")
        self.state = CheckState.SCANNING
        done: Future = Future()
        worker = threading.Thread(
            target=self._run_pipeline_async, args=(done,),
            name="pod-restarts-scan", daemon=True,
        )
        worker.start()

        try:
            outcome = done.result(timeout=max(self.cfg.check_timeout.total_seconds(), 0))
        except FutureTimeoutError:
            # Late results from the abandoned scan are rejected by the cancelled future.
            done.cancel()
            self.state = CheckState.TIMED_OUT
            verdict = Verdict.failure([TIMEOUT_MESSAGE])
        else:
            self.state = CheckState.COMPLETED
            verdict = self._verdict_from(outcome)

        try:
            self.reporter.report(verdict)
        finally:
            self.state = CheckState.REPORTED
        return verdict

    def _verdict_from(self, outcome: PipelineOutcome) -> Verdict:
        errors: list[str] = []
        if outcome.error is not None:
            logger.error(outcome.error)
            errors.append(str(outcome.error))
        errors.extend(outcome.registry.messages())
        if errors:
            return Verdict.failure(errors)
        return Verdict.success()

    def _run_pipeline_async(self, done: Future) -> None:
        try:
            outcome = self.run_pipeline()
        except Exception as exc:
            self._settle(done, exc=exc)
        else:
            self._settle(done, outcome=outcome)

    @staticmethod
    def _settle(done: Future, outcome: PipelineOutcome | None = None, exc: BaseException | None = None) -> None:
        try:
            if exc is not None:
                done.set_exception(exc)
            else:
                done.set_result(outcome)
        except InvalidStateError:
            logger.debug("Discarding pod restarts scan result that arrived after the deadline")

    def run_pipeline(self) -> PipelineOutcome:
        """Scan then reconcile. A cluster error hands off only the error."""
        registry = SuspectRegistry()
        try:
            scan_events(self.client, self.cfg.namespace, self.cfg.max_failures_allowed, registry)
            reconcile_suspects(self.client, registry)
        except TransportError as exc:
            return PipelineOutcome(registry=SuspectRegistry(), error=exc)
        return PipelineOutcome(registry=registry)


# =====================================================================
# Reporters
# =====================================================================

class KuberhealthyReporter:
    """POSTs the verdict to the Kuberhealthy reporting endpoint."""

    def __init__(self, url: str, run_uuid: str = "", timeout: float = 10.0) -> None:
        self.url = url
        self.run_uuid = run_uuid
        self.timeout = timeout

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> KuberhealthyReporter:
        env = os.environ if environ is None else environ
        return cls(url=env.get("KH_REPORTING_URL", ""), run_uuid=env.get("KH_RUN_UUID", ""))

    def report(self, verdict: Verdict) -> None:
        import requests

        if not self.url:
            raise ReportError("KH_REPORTING_URL is not set")
        try:
            resp = requests.post(
                self.url, json=verdict.to_dict(),
                headers={"kh-run-uuid": self.run_uuid}, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Error reporting to Kuberhealthy servers: %s", exc)
            raise ReportError(str(exc)) from exc
        if resp.status_code != 200:
            logger.error("Error reporting to Kuberhealthy servers: HTTP %s", resp.status_code)
            raise ReportError(f"bad status code from kuberhealthy status reporting url: {resp.status_code}")
        kind = "success" if verdict.ok else "failure"
        logger.info("Successfully reported %s to Kuberhealthy servers", kind)


class AnsibleReporter:
    """Turns the verdict into the Ansible module result."""

    def __init__(self, module: Any) -> None:
        self.module = module

    def report(self, verdict: Verdict) -> None:
        if verdict.ok:
            self.module.exit_json(changed=False, ok=True, errors=[])
        else:
            self.module.fail_json(
                msg=f"Pod restarts check failed: {'; '.join(verdict.errors)}",
                changed=False, ok=False, errors=verdict.errors,
            )


# =====================================================================
# Kuberhealthy Entry Point
# =====================================================================

def khcheck_main(environ: Mapping[str, str] | None = None) -> int:
    """Run once as a Kuberhealthy check and return the process exit code."""
    reporter = KuberhealthyReporter.from_env(environ)

    try:
        cfg = load_config(environ)
    except ConfigurationError as exc:
        try:
            reporter.report(Verdict.failure([str(exc)]))
        except ReportError as report_exc:
            logger.error("error when reporting to kuberhealthy with error: %s", report_exc)
            return 1
        logger.info("Successfully reported error to kuberhealthy")
        return 0

    try:
        client = create_kube_client(cfg.kubeconfig)
    except Exception as exc:
        logger.error("Unable to create kubernetes client: %s", exc)
        return 1

    try:
        PodRestartsChecker(cfg, client, reporter).run()
    except ReportError as exc:
        logger.error("Error running Pod Restarts check: %s", exc)
        return 2
    logger.info("Done running Pod Restarts check")
    return 0


def cli() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(khcheck_main())


# =====================================================================
# Ansible Module Entry Point
# =====================================================================

def run_module():
    from ansible.module_utils.basic import AnsibleModule

    module = AnsibleModule(
        argument_spec=dict(
            kubeconfig=dict(type="path", default=None),
            context=dict(type="str", default=None),
            namespace=dict(type="str", default=""),
            max_failures_allowed=dict(type="int", default=DEFAULT_MAX_FAILURES_ALLOWED),
            timeout=dict(type="int", default=int(DEFAULT_CHECK_TIMEOUT.total_seconds())),
        ),
        supports_check_mode=True,
    )

    try:
        import kubernetes  # noqa: F401
    except ImportError:
        module.fail_json(msg="The 'kubernetes' Python package is required. Install with: pip install kubernetes")
        return

    max_failures = module.params["max_failures_allowed"]
    if not INT32_MIN <= max_failures <= INT32_MAX:
        module.fail_json(msg=f"max_failures_allowed {max_failures} is out of the 32-bit range")
        return

    cfg = CheckConfig(
        namespace=module.params["namespace"] or "",
        max_failures_allowed=max_failures,
        check_timeout=timedelta(seconds=module.params["timeout"]),
        kubeconfig=module.params["kubeconfig"],
        context=module.params["context"],
    )

    try:
        client = create_kube_client(cfg.kubeconfig, cfg.context)
    except Exception as e:
        module.fail_json(msg=f"Failed to connect to Kubernetes cluster: {e}")
        return

    PodRestartsChecker(cfg, client, AnsibleReporter(module)).run()


def main():
    run_module()


if __name__ == "__main__":
    main()
