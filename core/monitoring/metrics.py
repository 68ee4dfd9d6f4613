"""
Prometheus metrics for the coordinator and the agent.
Each process builds its own collector on its own registry.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class CoordinatorMetrics:
    """Relay and control-plane metrics exposed at /metrics on the coordinator"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.pushes_total = Counter(
            'relay_pushes_total',
            'Snapshot pushes received by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.push_trades = Histogram(
            'relay_push_open_trades',
            'Open trades carried by one push',
            buckets=[0, 1, 2, 5, 10, 25, 50, 100, 250],
            registry=self.registry
        )
        self.closed_recorded_total = Counter(
            'relay_closed_trades_recorded_total',
            'Closed trades newly written to history',
            registry=self.registry
        )
        self.fetches_total = Counter(
            'relay_fetches_total',
            'Subscriber fetches by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.agent_status_reports = Counter(
            'agent_status_reports_total',
            'Account status reports received from the agent',
            ['status'],
            registry=self.registry
        )
        self.agent_last_heartbeat = Gauge(
            'agent_last_heartbeat_timestamp_unix',
            'Last agent heartbeat (unix seconds)',
            registry=self.registry
        )

    def record_push(self, outcome: str, open_trades: int = 0, closed_recorded: int = 0):
        self.pushes_total.labels(outcome=outcome).inc()
        if outcome == "ok":
            self.push_trades.observe(open_trades)
            if closed_recorded:
                self.closed_recorded_total.inc(closed_recorded)

    def record_fetch(self, outcome: str):
        self.fetches_total.labels(outcome=outcome).inc()

    def record_status_report(self, status: str):
        self.agent_status_reports.labels(status=status).inc()

    def set_heartbeat(self, timestamp: int):
        self.agent_last_heartbeat.set(timestamp)


class AgentMetrics:
    """Instance lifecycle metrics kept by the agent process"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.launches_total = Counter(
            'instance_launches_total',
            'Terminal launch attempts by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.launch_duration = Histogram(
            'instance_launch_duration_seconds',
            'Wall time of a launch including provisioning',
            buckets=[1, 5, 10, 30, 60, 120, 300, 600, 900],
            registry=self.registry
        )
        self.stops_total = Counter(
            'instance_stops_total',
            'Terminal stops performed',
            ['reason'],
            registry=self.registry
        )
        self.health_failures_total = Counter(
            'instance_health_failures_total',
            'Registered terminals found dead by the health check',
            registry=self.registry
        )
        self.registered_instances = Gauge(
            'instance_registered',
            'Terminals currently registered with the lifecycle manager',
            registry=self.registry
        )
        self.poll_errors_total = Counter(
            'agent_poll_errors_total',
            'Poll ticks that ended in an error',
            ['error_type'],
            registry=self.registry
        )

    def record_launch(self, outcome: str, duration_seconds: Optional[float] = None):
        self.launches_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            self.launch_duration.observe(duration_seconds)

    def record_stop(self, reason: str):
        self.stops_total.labels(reason=reason).inc()

    def record_health_failure(self):
        self.health_failures_total.inc()

    def set_registered(self, count: int):
        self.registered_instances.set(count)

    def record_poll_error(self, error_type: str):
        self.poll_errors_total.labels(error_type=error_type).inc()
