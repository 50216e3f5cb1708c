#!/usr/bin/env python3
"""
RabbitMQ Administrative Client Layer
====================================
Typed access to the broker operations the queue master balancer needs.

Two backends are provided:
- RabbitmqctlClient: drives the rabbitmqctl / rabbitmq-diagnostics CLI tools
  with JSON output
- ManagementApiClient: talks to the RabbitMQ management plugin HTTP API

All text decoding and node identifier normalization lives here so the
balancing logic only ever sees canonical node names.
"""

import json
import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

# Erlang pid rendering: <rabbit@host.1631004013.1234.0>
PID_PATTERN = re.compile(r'^<(?P<node>.+?)(?:\.\d+){3}>$')


# ==============================================================================
# ERRORS
# ==============================================================================

class RebalanceError(Exception):
    """Base class for all fatal balancer errors."""


class PreconditionError(RebalanceError):
    """Required tooling is missing or the cluster is too small to balance."""


class ProbeError(RebalanceError):
    """Cluster state could not be queried or parsed."""


class AdminCommandError(RebalanceError):
    """An administrative call against the broker failed."""

    def __init__(self, operation: str, details: str = ""):
        self.operation = operation
        self.details = details.strip()
        message = f"{operation} failed"
        if self.details:
            message = f"{message}: {self.details}"
        super().__init__(message)


# ==============================================================================
# NORMALIZATION
# ==============================================================================

def normalize_node_id(raw: str) -> str:
    """
    Reduce a broker node reference to its canonical node name.

    Queue masters are reported as Erlang pids such as
    ``<rabbit@node1.1631004013.1234.0>``; the node list reports bare names
    such as ``rabbit@node1``. Both reduce to ``rabbit@node1``. Already
    canonical names are returned unchanged.

    Args:
        raw: Node name or pid as reported by the broker

    Returns:
        Canonical node name
    """
    value = str(raw).strip().strip("'\"")
    match = PID_PATTERN.match(value)
    if match:
        return match.group('node')
    if value.startswith('<') and value.endswith('>'):
        return value[1:-1]
    return value


@dataclass(frozen=True)
class HealthStatus:
    """Result of a single node health probe."""
    node: str
    ok: bool
    details: str = ""


# ==============================================================================
# CLIENT INTERFACE
# ==============================================================================

class ClusterAdminClient:
    """Administrative operations consumed by the balancer."""

    def check_available(self) -> None:
        """Raise PreconditionError if the admin surface cannot be used."""
        raise NotImplementedError

    def list_running_nodes(self) -> List[str]:
        raise NotImplementedError

    def list_queue_leaders(self, vhost: str) -> List[Tuple[str, str]]:
        """Return (queue name, raw leader id) pairs in broker order."""
        raise NotImplementedError

    def get_queue_leader(self, vhost: str, queue: str) -> str:
        raise NotImplementedError

    def get_queue_replica_count(self, vhost: str, queue: str) -> int:
        """Return the number of copies of a queue, master included."""
        raise NotImplementedError

    def set_policy(self, vhost: str, name: str, priority: int,
                   pattern: str, definition: Dict[str, Any]) -> None:
        raise NotImplementedError

    def clear_policy(self, vhost: str, name: str) -> None:
        raise NotImplementedError

    def sync_queue(self, vhost: str, queue: str) -> None:
        """Block until the queue's mirrors are synchronised."""
        raise NotImplementedError

    def health_check(self, node: str) -> HealthStatus:
        raise NotImplementedError

    def get_global_parameter(self, name: str) -> Optional[Any]:
        raise NotImplementedError

    def set_global_parameter(self, name: str, value: Any) -> None:
        raise NotImplementedError

    def clear_global_parameter(self, name: str) -> None:
        raise NotImplementedError


# ==============================================================================
# RABBITMQCTL BACKEND
# ==============================================================================

class RabbitmqctlClient(ClusterAdminClient):
    """Admin client backed by the rabbitmqctl and rabbitmq-diagnostics tools."""

    def __init__(
        self,
        rabbitmqctl: str = "rabbitmqctl",
        diagnostics: str = "rabbitmq-diagnostics",
        node: Optional[str] = None,
        timeout: int = 60,
        sync_timeout: int = 600,
        log: Optional[logging.Logger] = None
    ):
        """
        Initialize the CLI client.

        Args:
            rabbitmqctl: Path to rabbitmqctl
            diagnostics: Path to rabbitmq-diagnostics
            node: Node to connect to (passed as -n), local node if None
            timeout: Timeout in seconds for ordinary commands
            sync_timeout: Timeout in seconds for sync_queue
            log: Logger instance
        """
        self.rabbitmqctl = rabbitmqctl
        self.diagnostics = diagnostics
        self.node = node
        self.timeout = timeout
        self.sync_timeout = sync_timeout
        self.logger = log or logger

    def _command(self, tool: str, *args: str, node: Optional[str] = None) -> List[str]:
        cmd = [tool, "-q"]
        target = node or self.node
        if target:
            cmd += ["-n", target]
        cmd += list(args)
        return cmd

    def run_command(self, command: List[str], timeout: Optional[int] = None) -> str:
        """
        Execute a CLI command and return its stdout.

        Raises:
            AdminCommandError: on non-zero exit, timeout or launch failure
        """
        timeout = timeout or self.timeout
        operation = ' '.join(command[:4])
        self.logger.debug(f"Executing: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise AdminCommandError(operation, f"command timeout after {timeout} seconds")
        except OSError as e:
            raise AdminCommandError(operation, str(e))

        if result.returncode != 0:
            raise AdminCommandError(operation, result.stderr or result.stdout)
        return result.stdout

    def _run_json(self, *args: str) -> Any:
        command = self._command(self.rabbitmqctl, *args, "--formatter", "json")
        stdout = self.run_command(command)
        try:
            return json.loads(stdout) if stdout.strip() else []
        except json.JSONDecodeError as e:
            self.logger.debug(f"Unparseable output: {stdout[:500]}")
            raise AdminCommandError(' '.join(args[:2]), f"unparseable JSON output: {e}")

    def check_available(self) -> None:
        missing = [tool for tool in (self.rabbitmqctl, self.diagnostics) if not shutil.which(tool)]
        if missing:
            raise PreconditionError(f"Required tools not found on PATH: {', '.join(missing)}")

    def list_running_nodes(self) -> List[str]:
        status = self._run_json("cluster_status")
        if not isinstance(status, dict) or 'running_nodes' not in status:
            raise AdminCommandError("cluster_status", "no running_nodes in output")
        return [str(node) for node in status['running_nodes']]

    def _list_queues(self, vhost: str, *columns: str) -> List[Dict[str, Any]]:
        rows = self._run_json("list_queues", "-p", vhost, *columns)
        if not isinstance(rows, list):
            raise AdminCommandError("list_queues", "expected a JSON list")
        return rows

    def list_queue_leaders(self, vhost: str) -> List[Tuple[str, str]]:
        try:
            return [(row['name'], row['pid']) for row in self._list_queues(vhost, "name", "pid")]
        except (KeyError, TypeError) as e:
            raise AdminCommandError("list_queues", f"missing column {e}")

    def _find_queue(self, vhost: str, queue: str, *columns: str) -> Dict[str, Any]:
        for row in self._list_queues(vhost, "name", *columns):
            if row.get('name') == queue:
                return row
        raise AdminCommandError("list_queues", f"queue '{queue}' not found in vhost '{vhost}'")

    def get_queue_leader(self, vhost: str, queue: str) -> str:
        return self._find_queue(vhost, queue, "pid")['pid']

    def get_queue_replica_count(self, vhost: str, queue: str) -> int:
        mirrors = self._find_queue(vhost, queue, "slave_pids").get('slave_pids') or []
        if isinstance(mirrors, str):
            mirrors = [m for m in mirrors.strip('[]').split(',') if m.strip()]
        return 1 + len(mirrors)

    def set_policy(self, vhost: str, name: str, priority: int,
                   pattern: str, definition: Dict[str, Any]) -> None:
        self.run_command(self._command(
            self.rabbitmqctl, "set_policy",
            "-p", vhost,
            "--priority", str(priority),
            "--apply-to", "queues",
            name, pattern, json.dumps(definition)
        ))

    def clear_policy(self, vhost: str, name: str) -> None:
        self.run_command(self._command(self.rabbitmqctl, "clear_policy", "-p", vhost, name))

    def sync_queue(self, vhost: str, queue: str) -> None:
        self.run_command(
            self._command(self.rabbitmqctl, "sync_queue", "-p", vhost, queue),
            timeout=self.sync_timeout
        )

    def health_check(self, node: str) -> HealthStatus:
        for check in ("check_running", "check_local_alarms"):
            try:
                self.run_command(self._command(self.diagnostics, check, node=node))
            except AdminCommandError as e:
                return HealthStatus(node, False, f"{check}: {e.details}")
        return HealthStatus(node, True)

    def get_global_parameter(self, name: str) -> Optional[Any]:
        for row in self._run_json("list_global_parameters"):
            if row.get('name') == name:
                value = row.get('value')
                if isinstance(value, str):
                    try:
                        return json.loads(value)
                    except json.JSONDecodeError:
                        return value
                return value
        return None

    def set_global_parameter(self, name: str, value: Any) -> None:
        self.run_command(self._command(
            self.rabbitmqctl, "set_global_parameter", name, json.dumps(value)
        ))

    def clear_global_parameter(self, name: str) -> None:
        self.run_command(self._command(self.rabbitmqctl, "clear_global_parameter", name))


# ==============================================================================
# MANAGEMENT HTTP API BACKEND
# ==============================================================================

class ManagementApiClient(ClusterAdminClient):
    """Admin client backed by the RabbitMQ management plugin HTTP API."""

    def __init__(
        self,
        base_url: str,
        username: str = "guest",
        password: str = "guest",
        timeout: int = 30,
        sync_timeout: int = 600,
        sync_poll_interval: float = 2.0,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
        log: Optional[logging.Logger] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.sync_timeout = sync_timeout
        self.sync_poll_interval = sync_poll_interval
        self.session = session or requests.Session()
        self.session.auth = (username, password)
        self.session.headers.update({'Content-Type': 'application/json'})
        self.sleep = sleep
        self.logger = log or logger

    @staticmethod
    def _quote(value: str) -> str:
        return quote(value, safe='')

    def _request(self, method: str, path: str, allow_missing: bool = False, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        self.logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            if allow_missing and response.status_code == 404:
                return None
            response.raise_for_status()
        except requests.RequestException as e:
            raise AdminCommandError(f"{method} {path}", str(e))

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AdminCommandError(f"{method} {path}", f"unparseable JSON response: {e}")

    def _queue_path(self, vhost: str, queue: str) -> str:
        return f"/api/queues/{self._quote(vhost)}/{self._quote(queue)}"

    def check_available(self) -> None:
        try:
            self._request("GET", "/api/overview")
        except AdminCommandError as e:
            raise PreconditionError(f"Management API not reachable at {self.base_url}: {e.details}")

    def list_running_nodes(self) -> List[str]:
        nodes = self._request("GET", "/api/nodes", params={'columns': 'name,running'})
        try:
            return [n['name'] for n in nodes if n.get('running')]
        except (KeyError, TypeError) as e:
            raise AdminCommandError("GET /api/nodes", f"unexpected payload: {e}")

    def list_queue_leaders(self, vhost: str) -> List[Tuple[str, str]]:
        queues = self._request("GET", f"/api/queues/{self._quote(vhost)}",
                               params={'columns': 'name,node'})
        try:
            return [(q['name'], q['node']) for q in queues]
        except (KeyError, TypeError) as e:
            raise AdminCommandError("GET /api/queues", f"unexpected payload: {e}")

    def _get_queue(self, vhost: str, queue: str) -> Dict[str, Any]:
        info = self._request("GET", self._queue_path(vhost, queue))
        if not isinstance(info, dict):
            raise AdminCommandError(f"GET queue {queue}", "unexpected payload")
        return info

    def get_queue_leader(self, vhost: str, queue: str) -> str:
        info = self._get_queue(vhost, queue)
        if 'node' not in info:
            raise AdminCommandError(f"GET queue {queue}", "no node in payload")
        return info['node']

    def get_queue_replica_count(self, vhost: str, queue: str) -> int:
        return 1 + len(self._get_queue(vhost, queue).get('slave_nodes') or [])

    def set_policy(self, vhost: str, name: str, priority: int,
                   pattern: str, definition: Dict[str, Any]) -> None:
        body = {
            'pattern': pattern,
            'definition': definition,
            'priority': priority,
            'apply-to': 'queues'
        }
        self._request("PUT", f"/api/policies/{self._quote(vhost)}/{self._quote(name)}", json=body)

    def clear_policy(self, vhost: str, name: str) -> None:
        self._request("DELETE", f"/api/policies/{self._quote(vhost)}/{self._quote(name)}")

    @staticmethod
    def _expected_mirrors(info: Dict[str, Any]) -> int:
        """
        Mirror count demanded by an ``ha-mode: exactly`` policy, else 0.

        Mirrors added by a fresh policy show up in ``slave_nodes`` only once
        the broker has started them, so an empty list is not yet "synced".
        """
        definition = info.get('effective_policy_definition') or {}
        if definition.get('ha-mode') != 'exactly':
            return 0
        try:
            return max(int(definition.get('ha-params', 1)) - 1, 0)
        except (TypeError, ValueError):
            return 0

    def sync_queue(self, vhost: str, queue: str) -> None:
        """Request a sync and wait until every mirror reports synchronised."""
        self._request("POST", f"{self._queue_path(vhost, queue)}/actions", json={'action': 'sync'})

        deadline = time.monotonic() + self.sync_timeout
        while True:
            info = self._get_queue(vhost, queue)
            mirrors = set(info.get('slave_nodes') or [])
            synced = set(info.get('synchronised_slave_nodes') or [])
            expected = self._expected_mirrors(info)
            if expected > len(mirrors):
                # a policy can ask for more copies than the cluster has nodes
                expected = min(expected, len(self.list_running_nodes()) - 1)
            if mirrors <= synced and len(mirrors) >= expected:
                return
            if time.monotonic() >= deadline:
                raise AdminCommandError(
                    f"sync {queue}",
                    f"mirrors not synchronised after {self.sync_timeout}s: "
                    f"{len(synced & mirrors)}/{max(expected, len(mirrors))} in sync"
                )
            self.logger.debug(
                f"Waiting for {queue} mirrors to sync: {sorted(mirrors - synced)} "
                f"({len(mirrors)}/{expected} started)"
            )
            self.sleep(self.sync_poll_interval)

    def health_check(self, node: str) -> HealthStatus:
        try:
            info = self._request("GET", f"/api/nodes/{self._quote(node)}")
        except AdminCommandError as e:
            return HealthStatus(node, False, e.details)

        problems = []
        if not info.get('running'):
            problems.append("node not running")
        if info.get('mem_alarm'):
            problems.append("memory alarm in effect")
        if info.get('disk_free_alarm'):
            problems.append("disk free alarm in effect")
        return HealthStatus(node, not problems, '; '.join(problems))

    def get_global_parameter(self, name: str) -> Optional[Any]:
        info = self._request("GET", f"/api/global-parameters/{self._quote(name)}", allow_missing=True)
        if info is None:
            return None
        return info.get('value')

    def set_global_parameter(self, name: str, value: Any) -> None:
        self._request("PUT", f"/api/global-parameters/{self._quote(name)}",
                      json={'name': name, 'value': value})

    def clear_global_parameter(self, name: str) -> None:
        self._request("DELETE", f"/api/global-parameters/{self._quote(name)}")
