#!/usr/bin/env python3
"""
RabbitMQ Queue Master Balancer
==============================
Spreads classic mirrored queue masters evenly across the nodes of a
RabbitMQ cluster.

Each pass samples the cluster, finds the node leading the most queues and
the node leading the fewest, and moves one queue's master from the former to
the latter using a temporary policy:

1. Widen   - add one extra mirror and sync it
2. Pin     - restrict the queue to the target node and sync again
3. Confirm - poll until the master is on the target node
4. Cleanup - remove the temporary policy and sync once more

The loop stops once the spread between the busiest and the idlest node is no
larger than the number of nodes.

Features:
- Health checks of every node before touching anything
- Queue name filter to limit which queues may be moved
- Cluster-wide run lock so two balancers never race
- Dry-run mode to preview the next move

Version: 1.0.0
"""

import argparse
import logging
import os
import re
import socket
import sys
import time
import traceback
from contextlib import nullcontext
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

import yaml

from rabbitmq_admin import (
    AdminCommandError,
    ClusterAdminClient,
    ManagementApiClient,
    PreconditionError,
    ProbeError,
    RabbitmqctlClient,
    RebalanceError,
    normalize_node_id,
)

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_STALLED = 3
EXIT_INTERRUPTED = 130


class HealthCheckError(RebalanceError):
    """A node failed its health probe."""

    def __init__(self, node: str, details: str):
        self.node = node
        self.details = details
        super().__init__(f"Node {node} failed health check: {details}")


class MigrationRpcError(RebalanceError):
    """An admin call failed while a migration was in progress."""

    def __init__(self, queue: str, policy: str, cause: Exception):
        self.queue = queue
        self.policy = policy
        super().__init__(f"Migration of queue '{queue}' aborted: {cause}")


class LockHeldError(RebalanceError):
    """Another balancer run holds the cluster lock."""


# ==============================================================================
# LOGGING CONFIGURATION
# ==============================================================================

class MaxLevelFilter(logging.Filter):
    """Pass only records below the given level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def setup_logging(log_dir: str = "./logs") -> logging.Logger:
    """
    Configure logging for the balancer.

    Args:
        log_dir: Directory to store log files

    Returns:
        Configured logger instance
    """
    os.makedirs(log_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"queue_master_balancer_{timestamp}.log")

    logger = logging.getLogger("QueueMasterBalancer")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    # File handler - detailed logs
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s'
    ))

    console_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # Console handlers - progress to stdout, errors to stderr
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.INFO)
    stdout_handler.addFilter(MaxLevelFilter(logging.ERROR))
    stdout_handler.setFormatter(console_formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stdout_handler)
    logger.addHandler(stderr_handler)

    logger.info(f"Logging initialized. Log file: {log_file}")
    return logger


# ==============================================================================
# CONFIGURATION MANAGEMENT
# ==============================================================================

BACKENDS = ('rabbitmqctl', 'http')

# YAML section -> option names accepted in that section
CONFIG_SECTIONS = {
    'rabbitmq': ('backend', 'rabbitmqctl_path', 'diagnostics_path', 'node', 'management_url',
                 'username', 'password', 'request_timeout', 'sync_timeout'),
    'balancer': ('vhost', 'queue_filter', 'disable_health_check', 'max_retries',
                 'retry_interval', 'policy_prefix', 'policy_priority'),
    'lock': ('lock_enabled', 'lock_name'),
}


@dataclass(frozen=True)
class BalancerConfig:
    """Operator options for one balancer run."""
    vhost: str = "/"
    queue_filter: str = ".*"
    disable_health_check: bool = False
    max_retries: int = 60
    retry_interval: float = 5
    policy_prefix: str = "rebalance-master-"
    policy_priority: int = 990
    backend: str = "rabbitmqctl"
    rabbitmqctl_path: str = "rabbitmqctl"
    diagnostics_path: str = "rabbitmq-diagnostics"
    node: Optional[str] = None
    management_url: str = "http://localhost:15672"
    username: str = "guest"
    password: str = "guest"
    request_timeout: int = 60
    sync_timeout: int = 600
    lock_enabled: bool = True
    lock_name: str = "queue-master-balancer-lock"
    dry_run: bool = False


def _load_yaml(config_file: str, logger: logging.Logger) -> Dict:
    """Load configuration from YAML file."""
    try:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Configuration loaded from {config_file}")
        return data
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config_file}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        raise


def _flatten(data: Dict) -> Dict:
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping")
    unknown = sorted(str(key) for key in data if key not in CONFIG_SECTIONS)
    if unknown:
        raise ValueError(
            f"Unknown config section(s) {unknown}; expected {sorted(CONFIG_SECTIONS)}"
        )

    values = {}
    for section, options in CONFIG_SECTIONS.items():
        block = data.get(section) or {}
        if not isinstance(block, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        for key, value in block.items():
            # the lock section uses short keys: enabled, name
            option = f"lock_{key}" if section == 'lock' else key
            if option not in options:
                raise ValueError(f"Unknown option '{key}' in config section '{section}'")
            values[option] = value
    return values


def _validate(config: BalancerConfig) -> None:
    """Validate option values."""
    if config.backend not in BACKENDS:
        raise ValueError(f"backend must be one of {BACKENDS}, got '{config.backend}'")
    if config.max_retries < 1:
        raise ValueError("max_retries must be at least 1")
    if config.retry_interval < 0:
        raise ValueError("retry_interval must not be negative")
    if not config.policy_prefix:
        raise ValueError("policy_prefix must not be empty")
    try:
        re.compile(config.queue_filter)
    except re.error as e:
        raise ValueError(f"Invalid queue filter '{config.queue_filter}': {e}")


def load_config(config_file: Optional[str], overrides: Mapping,
                logger: logging.Logger) -> BalancerConfig:
    """
    Build the run configuration.

    Values come from the defaults, then the optional YAML file, then
    command-line overrides (None means not given).

    Args:
        config_file: Path to YAML configuration file or None
        overrides: Option name -> value from the command line
        logger: Logger instance

    Returns:
        Validated, immutable configuration
    """
    values = _flatten(_load_yaml(config_file, logger)) if config_file else {}
    known = {f.name for f in fields(BalancerConfig)}
    values.update({k: v for k, v in overrides.items() if v is not None and k in known})

    config = BalancerConfig(**values)
    _validate(config)
    logger.info("✓ Configuration validation passed")
    return config


def build_client(config: BalancerConfig, logger: logging.Logger) -> ClusterAdminClient:
    """Create the admin client for the configured backend."""
    if config.backend == 'http':
        return ManagementApiClient(
            config.management_url,
            username=config.username,
            password=config.password,
            timeout=config.request_timeout,
            sync_timeout=config.sync_timeout,
            log=logger
        )
    return RabbitmqctlClient(
        rabbitmqctl=config.rabbitmqctl_path,
        diagnostics=config.diagnostics_path,
        node=config.node,
        timeout=config.request_timeout,
        sync_timeout=config.sync_timeout,
        log=logger
    )


# ==============================================================================
# CLUSTER STATE
# ==============================================================================

@dataclass(frozen=True)
class QueueLeader:
    name: str
    leader: str


@dataclass(frozen=True)
class ClusterSnapshot:
    """
    Point-in-time view of queue leadership.

    ``node_counts`` tallies one occurrence per running node plus one per
    queue led, so every count is the node's true leader count + 1.
    """
    nodes: Tuple[str, ...]
    node_counts: Mapping[str, int]
    queues: Tuple[QueueLeader, ...]

    def leader_count(self, node: str) -> int:
        return self.node_counts[node] - 1


class ClusterStateProbe:
    """Sample the cluster's running nodes and queue masters."""

    def __init__(self, client: ClusterAdminClient, vhost: str, logger: logging.Logger):
        self.client = client
        self.vhost = vhost
        self.logger = logger

    def sample(self) -> ClusterSnapshot:
        """
        Query running nodes and queue masters and tally leadership.

        Returns:
            ClusterSnapshot

        Raises:
            ProbeError: if a query fails or a master is on an unknown node
        """
        try:
            raw_nodes = self.client.list_running_nodes()
            raw_queues = self.client.list_queue_leaders(self.vhost)
        except AdminCommandError as e:
            raise ProbeError(f"Could not sample cluster state: {e}") from e

        nodes = []
        for raw in raw_nodes:
            node = normalize_node_id(raw)
            if node not in nodes:
                nodes.append(node)

        counts: Dict[str, int] = {node: 1 for node in nodes}
        queues = []
        for name, raw_leader in raw_queues:
            leader = normalize_node_id(raw_leader)
            if leader not in counts:
                raise ProbeError(
                    f"Queue '{name}' is led by {leader}, which is not a running node {nodes}"
                )
            counts[leader] += 1
            queues.append(QueueLeader(name, leader))

        self.logger.debug(f"Sampled {len(nodes)} nodes, {len(queues)} queues in vhost '{self.vhost}'")
        return ClusterSnapshot(tuple(nodes), MappingProxyType(counts), tuple(queues))


# ==============================================================================
# IMBALANCE ANALYSIS
# ==============================================================================

@dataclass(frozen=True)
class ImbalanceVerdict:
    max_node: str
    max_count: int
    min_node: str
    min_count: int
    diff: int
    node_count: int
    balanced: bool


class ImbalanceAnalyzer:
    """Find the busiest and idlest nodes and decide whether to stop."""

    def analyze(self, snapshot: ClusterSnapshot) -> ImbalanceVerdict:
        if not snapshot.nodes:
            raise ProbeError("No running nodes in snapshot")

        # sorted() is stable: ties keep discovery order
        ordered = sorted(snapshot.nodes, key=lambda node: snapshot.node_counts[node])
        min_node, max_node = ordered[0], ordered[-1]
        max_count = snapshot.node_counts[max_node]
        min_count = snapshot.node_counts[min_node]
        diff = max_count - min_count
        node_count = len(snapshot.nodes)

        return ImbalanceVerdict(
            max_node=max_node,
            max_count=max_count,
            min_node=min_node,
            min_count=min_count,
            diff=diff,
            node_count=node_count,
            balanced=diff <= node_count
        )


# ==============================================================================
# HEALTH GATE
# ==============================================================================

class HealthGate:
    """Refuse to proceed unless every node passes its health check."""

    def __init__(self, client: ClusterAdminClient, logger: logging.Logger):
        self.client = client
        self.logger = logger

    def check(self, nodes) -> None:
        """
        Health check each node in turn, stopping at the first failure.

        Raises:
            HealthCheckError: for the first failing node
        """
        for node in nodes:
            status = self.client.health_check(node)
            if not status.ok:
                self.logger.error(f"✗ Health check failed for {node}")
                for line in status.details.splitlines():
                    self.logger.error(f"  {line}")
                raise HealthCheckError(node, status.details)
            self.logger.debug(f"✓ {node} healthy")
        self.logger.info(f"✓ All {len(nodes)} nodes passed health checks")


# ==============================================================================
# QUEUE SELECTION
# ==============================================================================

@dataclass(frozen=True)
class MigrationTarget:
    queue: str
    source_node: str
    target_node: str


class QueueSelector:
    """Pick a queue led by the overloaded node."""

    def select(self, snapshot: ClusterSnapshot, max_node: str, name_filter: str,
               exclude: Optional[Set[str]] = None) -> Optional[QueueLeader]:
        """
        Return the first queue, in probe order, led by max_node whose name
        matches name_filter, or None.
        """
        pattern = re.compile(name_filter)
        exclude = exclude or set()
        for queue in snapshot.queues:
            if queue.leader != max_node or queue.name in exclude:
                continue
            if pattern.search(queue.name):
                return queue
        return None


# ==============================================================================
# MIGRATION
# ==============================================================================

@dataclass
class RetryPolicy:
    """
    Bounded polling with a fixed interval by default.

    A ``backoff`` above 1.0 multiplies the delay after every attempt.
    """
    max_attempts: int = 60
    interval_seconds: float = 5
    backoff: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    attempts: int = 0

    def run(self, predicate: Callable[[], bool]) -> bool:
        """Call predicate until it returns True or attempts run out."""
        delay = self.interval_seconds
        while self.attempts < self.max_attempts:
            self.attempts += 1
            if predicate():
                return True
            if self.attempts < self.max_attempts:
                self.sleep(delay)
                delay *= self.backoff
        return False


class MigrationOutcome(Enum):
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


class MasterMigrator:
    """Move one queue's master to a target node with a temporary policy."""

    def __init__(self, client: ClusterAdminClient, logger: logging.Logger,
                 policy_prefix: str = "rebalance-master-", policy_priority: int = 990):
        self.client = client
        self.logger = logger
        self.policy_prefix = policy_prefix
        self.policy_priority = policy_priority
        # (vhost, policy name) while a migration is under way
        self.active_policy: Optional[Tuple[str, str]] = None

    def policy_name(self, queue: str) -> str:
        return f"{self.policy_prefix}{queue}"

    def migrate(self, queue: str, target_node: str, retry_policy: RetryPolicy,
                vhost: str, node_count: Optional[int] = None) -> MigrationOutcome:
        """
        Move the master of a queue to target_node.

        Args:
            queue: Queue name
            target_node: Canonical node name to move the master to
            retry_policy: Polling budget for the confirm phase
            vhost: Virtual host of the queue
            node_count: Cluster size, caps the widened mirror count

        Returns:
            MigrationOutcome.CONVERGED or MigrationOutcome.TIMED_OUT

        Raises:
            MigrationRpcError: if any admin call fails; the temporary policy
                is left in place
        """
        name = self.policy_name(queue)
        pattern = f"^{re.escape(queue)}$"
        self.active_policy = (vhost, name)

        try:
            # Phase 1: widen by one mirror so the target holds a synced copy
            replicas = self.client.get_queue_replica_count(vhost, queue) + 1
            if node_count:
                replicas = min(replicas, node_count)
            self.logger.info(f"[1/4] Widen: {name} ha-mode=exactly ha-params={replicas}")
            self.client.set_policy(vhost, name, self.policy_priority, pattern, {
                'ha-mode': 'exactly',
                'ha-params': replicas,
                'ha-sync-mode': 'automatic'
            })
            self.client.sync_queue(vhost, queue)

            # Phase 2: pin to the target; same name replaces the widen policy
            self.logger.info(f"[2/4] Pin: {name} ha-mode=nodes ha-params=[{target_node}]")
            self.client.set_policy(vhost, name, self.policy_priority, pattern, {
                'ha-mode': 'nodes',
                'ha-params': [target_node],
                'ha-sync-mode': 'automatic'
            })
            self.client.sync_queue(vhost, queue)

            # Phase 3: confirm
            self.logger.info(
                f"[3/4] Confirm: waiting for master on {target_node} "
                f"(up to {retry_policy.max_attempts} checks every {retry_policy.interval_seconds}s)"
            )
            converged = retry_policy.run(lambda: self._leader_is(vhost, queue, target_node))
            if converged:
                outcome = MigrationOutcome.CONVERGED
                self.logger.info(f"✓ Master of '{queue}' is now on {target_node} "
                                 f"after {retry_policy.attempts} check(s)")
            else:
                outcome = MigrationOutcome.TIMED_OUT
                self.logger.warning(f"⚠ Master of '{queue}' did not move to {target_node} "
                                    f"after {retry_policy.attempts} checks")

            # Phase 4: cleanup, for both outcomes
            self.logger.info(f"[4/4] Cleanup: clearing policy {name}")
            self.client.clear_policy(vhost, name)
            self.client.sync_queue(vhost, queue)
        except AdminCommandError as e:
            self.logger.error(f"✗ Admin call failed while migrating '{queue}': {e}")
            self.logger.error(f"Temporary policy '{name}' may still be set on vhost '{vhost}'")
            raise MigrationRpcError(queue, name, e) from e

        self.active_policy = None
        return outcome

    def _leader_is(self, vhost: str, queue: str, target_node: str) -> bool:
        leader = normalize_node_id(self.client.get_queue_leader(vhost, queue))
        self.logger.debug(f"Master of '{queue}' is on {leader}")
        return leader == target_node


# ==============================================================================
# RUN LOCK
# ==============================================================================

class RunLock:
    """Cluster-wide lock held in a global runtime parameter."""

    def __init__(self, client: ClusterAdminClient, name: str, logger: logging.Logger):
        self.client = client
        self.name = name
        self.logger = logger
        self.token = f"{socket.gethostname()}:{os.getpid()}:{int(time.time())}"
        self.held = False

    def acquire(self) -> None:
        current = self.client.get_global_parameter(self.name)
        if current is not None:
            raise LockHeldError(
                f"Lock '{self.name}' is held by {self._owner(current)}. "
                f"If no balancer is running, clear it with --release-lock"
            )

        self.client.set_global_parameter(self.name, {
            'owner': self.token,
            'acquired_at': datetime.now().isoformat()
        })
        current = self.client.get_global_parameter(self.name)
        if self._owner(current) != self.token:
            raise LockHeldError(f"Lock '{self.name}' was taken by {self._owner(current)}")

        self.held = True
        self.logger.info(f"✓ Acquired lock '{self.name}' ({self.token})")

    def release(self) -> None:
        if not self.held:
            return
        try:
            current = self.client.get_global_parameter(self.name)
            if self._owner(current) == self.token:
                self.client.clear_global_parameter(self.name)
                self.logger.info(f"Released lock '{self.name}'")
            else:
                self.logger.warning(f"Lock '{self.name}' now belongs to {self._owner(current)}, leaving it")
        except AdminCommandError as e:
            self.logger.warning(f"Could not release lock '{self.name}': {e}")
        self.held = False

    def force_release(self) -> None:
        current = self.client.get_global_parameter(self.name)
        if current is None:
            self.logger.info(f"Lock '{self.name}' is not held")
            return
        self.client.clear_global_parameter(self.name)
        self.logger.warning(f"Cleared lock '{self.name}' held by {self._owner(current)}")

    @staticmethod
    def _owner(value) -> str:
        if isinstance(value, dict):
            return str(value.get('owner'))
        return str(value)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


# ==============================================================================
# REBALANCE LOOP
# ==============================================================================

class RunStatus(Enum):
    BALANCED = "balanced"
    STALLED = "stalled"
    PLANNED = "planned"


@dataclass
class RebalanceResult:
    status: RunStatus
    iterations: int = 0
    converged: int = 0
    timed_out: int = 0
    verdict: Optional[ImbalanceVerdict] = None
    planned: Optional[MigrationTarget] = None


class RebalanceLoop:
    """Sample, analyze, move one queue, repeat until balanced."""

    def __init__(
        self,
        client: ClusterAdminClient,
        config: BalancerConfig,
        logger: logging.Logger,
        retry_factory: Optional[Callable[[], RetryPolicy]] = None
    ):
        """
        Initialize the loop.

        Args:
            client: Admin client
            config: Run configuration
            logger: Logger instance
            retry_factory: Builds a fresh RetryPolicy per migration
        """
        self.client = client
        self.config = config
        self.logger = logger
        self.probe = ClusterStateProbe(client, config.vhost, logger)
        self.analyzer = ImbalanceAnalyzer()
        self.gate = HealthGate(client, logger)
        self.selector = QueueSelector()
        self.migrator = MasterMigrator(client, logger, config.policy_prefix, config.policy_priority)
        self.retry_factory = retry_factory or (
            lambda: RetryPolicy(config.max_retries, config.retry_interval)
        )
        # queues that timed out this run
        self.abandoned: Set[str] = set()

    def check_preconditions(self) -> ClusterSnapshot:
        """Verify tooling and cluster size, then run the initial health gate."""
        self.logger.info("Checking preconditions")
        self.client.check_available()

        snapshot = self.probe.sample()
        if len(snapshot.nodes) < 2:
            raise PreconditionError(
                f"At least 2 running nodes are required, found {len(snapshot.nodes)}: "
                f"{list(snapshot.nodes)}"
            )
        self.logger.info(f"Running nodes: {', '.join(snapshot.nodes)}")

        self.gate.check(snapshot.nodes)
        return snapshot

    def _log_distribution(self, snapshot: ClusterSnapshot, verdict: ImbalanceVerdict) -> None:
        for node in snapshot.nodes:
            self.logger.info(f"  {node:<40} {snapshot.leader_count(node):>6} masters")
        self.logger.info(
            f"Max: {verdict.max_node} ({verdict.max_count - 1}), "
            f"Min: {verdict.min_node} ({verdict.min_count - 1}), "
            f"Diff: {verdict.diff}, Nodes: {verdict.node_count}"
        )

    def run(self, snapshot: Optional[ClusterSnapshot] = None) -> RebalanceResult:
        """
        Loop until balanced, stalled or (dry run) planned.

        Args:
            snapshot: Result of check_preconditions() if already run;
                preconditions are checked here otherwise
        """
        result = RebalanceResult(RunStatus.BALANCED)
        if snapshot is None:
            snapshot = self.check_preconditions()

        while True:
            result.iterations += 1
            self.logger.info("=" * 70)
            self.logger.info(f"ITERATION {result.iterations}")
            self.logger.info("=" * 70)

            if snapshot is None:
                snapshot = self.probe.sample()
            verdict = self.analyzer.analyze(snapshot)
            result.verdict = verdict
            self._log_distribution(snapshot, verdict)

            if verdict.balanced:
                self.logger.info(f"✓ Cluster is balanced (diff {verdict.diff} <= {verdict.node_count} nodes)")
                result.status = RunStatus.BALANCED
                return result

            if not self.config.disable_health_check:
                self.gate.check(snapshot.nodes)

            queue = self.selector.select(snapshot, verdict.max_node,
                                         self.config.queue_filter, self.abandoned)
            if queue is None:
                self.logger.error(
                    f"✗ No queue on {verdict.max_node} matches filter "
                    f"'{self.config.queue_filter}' and can be moved; stopping"
                )
                if self.abandoned:
                    self.logger.error(f"Queues abandoned after timeouts: {sorted(self.abandoned)}")
                result.status = RunStatus.STALLED
                return result

            target = MigrationTarget(queue.name, queue.leader, verdict.min_node)
            self.logger.info(f"Moving '{target.queue}': {target.source_node} → {target.target_node}")

            if self.config.dry_run:
                self.logger.info("🔍 DRY-RUN: Skipping migration")
                result.status = RunStatus.PLANNED
                result.planned = target
                return result

            snapshot = None
            if queue.leader == target.target_node:
                self.logger.info(f"'{target.queue}' is already on {target.target_node}, skipping")
                continue

            outcome = self.migrator.migrate(
                target.queue,
                target.target_node,
                self.retry_factory(),
                self.config.vhost,
                node_count=verdict.node_count
            )
            if outcome is MigrationOutcome.CONVERGED:
                result.converged += 1
            else:
                result.timed_out += 1
                self.abandoned.add(target.queue)


# ==============================================================================
# MAIN EXECUTION
# ==============================================================================

def print_banner():
    """Print script banner."""
    banner = f"""
╔══════════════════════════════════════════════════════════════════════╗
║                                                                      ║
║              RabbitMQ Queue Master Balancer - v{__version__}                 ║
║                                                                      ║
╚══════════════════════════════════════════════════════════════════════╝
    """
    print(banner)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Spread RabbitMQ queue masters evenly across cluster nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--config', help='Path to configuration YAML file (optional)')
    parser.add_argument('-p', '--vhost', help='Virtual host to balance (default: /)')
    parser.add_argument(
        '-f', '--queue-filter',
        dest='queue_filter',
        help='Regular expression; only matching queues are moved (default: all)'
    )
    parser.add_argument(
        '--disable-health-check',
        action='store_true',
        default=None,
        help='Skip per-iteration health checks (the initial check always runs)'
    )
    parser.add_argument(
        '-r', '--max-retries',
        type=int,
        dest='max_retries',
        help='Checks to wait for a master to move before giving up (default: 60)'
    )
    parser.add_argument('--backend', choices=BACKENDS, help='Admin backend (default: rabbitmqctl)')
    parser.add_argument('-n', '--node', help='Node rabbitmqctl connects to')
    parser.add_argument('--management-url', dest='management_url',
                        help='Management API URL for the http backend')
    parser.add_argument('--no-lock', dest='lock_enabled', action='store_false', default=None,
                        help='Do not take the cluster-wide run lock')
    parser.add_argument('--release-lock', action='store_true',
                        help='Clear a stale run lock and exit')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Show the next move without making changes')
    parser.add_argument('--log-dir', default='./logs', help='Directory for log files (default: ./logs)')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function."""
    print_banner()
    args = parse_args(argv)
    logger = setup_logging(args.log_dir)
    loop = None

    try:
        config = load_config(args.config, vars(args), logger)
        client = build_client(config, logger)
        logger.info(f"Backend: {config.backend}, vhost: {config.vhost}, filter: {config.queue_filter}")

        if args.release_lock:
            client.check_available()
            RunLock(client, config.lock_name, logger).force_release()
            return EXIT_OK

        loop = RebalanceLoop(client, config, logger)
        # nothing is written to the broker until preconditions and health pass
        snapshot = loop.check_preconditions()

        if config.lock_enabled and not config.dry_run:
            lock = RunLock(client, config.lock_name, logger)
        else:
            lock = nullcontext()
        with lock:
            result = loop.run(snapshot)

        logger.info("=" * 70)
        logger.info("SUMMARY")
        logger.info("=" * 70)
        logger.info(f"Status: {result.status.value}")
        logger.info(f"Iterations: {result.iterations}")
        logger.info(f"Migrations converged: {result.converged}")
        logger.info(f"Migrations timed out: {result.timed_out}")
        logger.info("=" * 70)

        if result.status is RunStatus.STALLED:
            return EXIT_STALLED
        return EXIT_OK

    except KeyboardInterrupt:
        logger.warning("\nOperation interrupted by user")
        if loop is not None and loop.migrator.active_policy:
            vhost, name = loop.migrator.active_policy
            logger.warning(f"Temporary policy '{name}' may still be set on vhost '{vhost}'")
        return EXIT_INTERRUPTED

    except RebalanceError as e:
        logger.error(f"✗ {e}")
        return EXIT_FAILURE

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        logger.debug(traceback.format_exc())
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
