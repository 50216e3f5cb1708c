"""
Shared fixtures: an in-memory RabbitMQ cluster implementing the admin client.
"""
import logging
import os
import sys
from collections import OrderedDict

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from rabbitmq_admin import (  # noqa: E402
    AdminCommandError,
    ClusterAdminClient,
    HealthStatus,
    PreconditionError,
)


class FakeCluster(ClusterAdminClient):
    """
    Cluster double.

    Queue masters are reported as Erlang pids. A "nodes" policy moves the
    master to the pinned node unless the queue is listed in ``stuck``.
    """

    def __init__(self, counts, prefix="q"):
        self.nodes = list(counts)
        self.queues = OrderedDict()
        for node, count in counts.items():
            for i in range(count):
                self.queues[f"{prefix}-{node.split('@')[-1]}-{i:03d}"] = node
        self.replicas = {}
        self.policies = {}
        self.global_params = {}
        self.unhealthy = {}
        self.stuck = set()
        self.fail_on = set()
        self.calls = []
        self.available = True

    def _call(self, op, *args):
        self.calls.append((op,) + args)
        if op in self.fail_on:
            raise AdminCommandError(op, "simulated failure")

    def ops(self, op):
        return [c for c in self.calls if c[0] == op]

    def counts(self):
        tally = {node: 0 for node in self.nodes}
        for leader in self.queues.values():
            tally[leader] += 1
        return tally

    def check_available(self):
        if not self.available:
            raise PreconditionError("rabbitmqctl not found")

    def list_running_nodes(self):
        self._call("list_running_nodes")
        return list(self.nodes)

    def list_queue_leaders(self, vhost):
        self._call("list_queue_leaders", vhost)
        return [(name, f"<{node}.1.234.0>") for name, node in self.queues.items()]

    def get_queue_leader(self, vhost, queue):
        self._call("get_queue_leader", vhost, queue)
        return f"<{self.queues[queue]}.3.99.0>"

    def get_queue_replica_count(self, vhost, queue):
        self._call("get_queue_replica_count", vhost, queue)
        return self.replicas.get(queue, 1)

    def set_policy(self, vhost, name, priority, pattern, definition):
        self._call("set_policy", vhost, name, priority, pattern, definition)
        self.policies[name] = definition
        if definition.get("ha-mode") == "nodes":
            queue = pattern[1:-1].replace("\\", "")
            if queue not in self.stuck:
                self.queues[queue] = definition["ha-params"][0]

    def clear_policy(self, vhost, name):
        self._call("clear_policy", vhost, name)
        self.policies.pop(name, None)

    def sync_queue(self, vhost, queue):
        self._call("sync_queue", vhost, queue)

    def health_check(self, node):
        self._call("health_check", node)
        if node in self.unhealthy:
            return HealthStatus(node, False, self.unhealthy[node])
        return HealthStatus(node, True)

    def get_global_parameter(self, name):
        self._call("get_global_parameter", name)
        return self.global_params.get(name)

    def set_global_parameter(self, name, value):
        self._call("set_global_parameter", name, value)
        self.global_params[name] = value

    def clear_global_parameter(self, name):
        self._call("clear_global_parameter", name)
        self.global_params.pop(name, None)


@pytest.fixture
def make_cluster():
    return FakeCluster


@pytest.fixture
def logger():
    return logging.getLogger("QueueMasterBalancerTest")


@pytest.fixture
def no_sleep():
    delays = []
    return delays.append, delays
