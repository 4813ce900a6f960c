from prometheus_client import (
    CollectorRegistry,
    GCCollector,
    PlatformCollector,
    ProcessCollector,
)
from prometheus_client.core import GaugeMetricFamily

from coordinator.aggregator import MetricsAggregator


class ClusterCollector:
    """Reads the aggregator on every scrape."""

    def __init__(self, aggregator: MetricsAggregator) -> None:
        self.aggregator = aggregator

    def collect(self):
        snap = self.aggregator.snapshot

        yield GaugeMetricFamily(
            "ome_cluster_connected_clients_total",
            "Total connected clients across all nodes",
            value=snap.total_clients,
        )
        yield GaugeMetricFamily(
            "ome_cluster_drop_rate",
            "Fraction of clients lost since previous sample",
            value=snap.drop_rate,
        )
        yield GaugeMetricFamily(
            "ome_cluster_avg_startup_delay_ms",
            "Average startup delay (ms)",
            value=snap.avg_startup_ms,
        )
        yield GaugeMetricFamily(
            "ome_cluster_avg_bitrate_bps",
            "Average bitrate (bps)",
            value=snap.avg_bitrate_bps,
        )
        yield GaugeMetricFamily(
            "ome_cluster_avg_buffer_events",
            "Average buffer count per client",
            value=snap.avg_buffer_events,
        )
        yield GaugeMetricFamily(
            "ome_cluster_avg_buffer_time_ms",
            "Average buffering time per client (ms)",
            value=snap.avg_buffer_time_ms,
        )

        # Node-level
        cpu = GaugeMetricFamily("ome_cluster_node_cpu_load", "Node CPU load average (1m)", labels=["node"])
        mem = GaugeMetricFamily("ome_cluster_node_memory_used_ratio", "Node memory utilization ratio", labels=["node"])
        clients = GaugeMetricFamily("ome_cluster_node_clients", "Number of clients on node", labels=["node"])
        failures = GaugeMetricFamily(
            "ome_cluster_node_browser_failures_total", "Browser/client restarts observed", labels=["node"]
        )
        for node_id, res in sorted(self.aggregator.node_resources.items()):
            cpu.add_metric([node_id], res.cpu)
            mem.add_metric([node_id], res.mem)
            clients.add_metric([node_id], res.clients)
            failures.add_metric([node_id], res.failures)
        yield cpu
        yield mem
        yield clients
        yield failures


def build_registry(aggregator: MetricsAggregator) -> CollectorRegistry:
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)
    registry.register(ClusterCollector(aggregator))
    return registry
