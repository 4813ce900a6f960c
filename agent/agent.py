import asyncio
import contextlib
import csv
import json
import logging
import os
import shlex
from datetime import datetime, timezone

import psutil
import websockets
from prometheus_client import CollectorRegistry, Gauge, start_http_server

# ================= CONFIG =================
COORDINATOR_URL = os.getenv("COORDINATOR_URL", "ws://localhost:9000/ws")
STREAM_URL = os.getenv("STREAM_URL", "ws://localhost:3333/app/stream")
CLIENT_COMMAND = os.getenv("CLIENT_COMMAND", "ome-client")
REPORT_INTERVAL = float(os.getenv("REPORT_INTERVAL", "10"))
LAUNCH_SPACING = float(os.getenv("LAUNCH_SPACING", "0.5"))
RECONNECT_DELAY = float(os.getenv("RECONNECT_DELAY", "5"))
METRICS_PORT = int(os.getenv("METRICS_PORT", "9464"))
CLIENT_CSV = os.getenv("CLIENT_CSV", "ome_qoe_metrics.csv")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logger = logging.getLogger("agent")


# ================= METRICS =================
def collect_resources():
    load_avg = psutil.getloadavg()[0]
    mem = psutil.virtual_memory()
    return {"cpu": load_avg, "mem": mem.percent / 100}


def summarize(samples):
    """Fold per-client samples into the averaged figures a report carries."""
    total = len(samples)
    connected = [s for s in samples if s.get("connected")]
    ok = len(connected)
    startups = [s["startupDelay"] for s in samples if s.get("startupDelay")]

    return {
        "connected": ok,
        "avgStartup": sum(startups) / (len(startups) or 1),
        "avgBuffers": sum(s.get("bufferEvents") or 0 for s in samples) / (total or 1),
        "avgBufferTime": sum(s.get("bufferTime") or 0 for s in connected) / (ok or 1),
        "avgBitrate": sum(s.get("bitrate") or 0 for s in connected) / (ok or 1),
    }


# ================= CLIENTS =================
class ClientPool:
    """Synthetic client processes, one per simulated viewer.

    Each process gets ``<client_id> <stream_url>`` as arguments and prints one
    JSON sample per line on stdout.
    """

    def __init__(self, command=CLIENT_COMMAND, stream_url=STREAM_URL, spacing=LAUNCH_SPACING):
        self.command = shlex.split(command)
        self.stream_url = stream_url
        self.spacing = spacing
        self.procs = {}
        self.samples = {}
        self.failures = 0
        self._followers = set()

    def __len__(self):
        return len(self.procs)

    async def scale_to(self, target):
        to_add = target - len(self.procs)
        if to_add <= 0:
            return 0
        logger.info(f"Spawning {to_add} clients")
        for _ in range(to_add):
            await self.launch(len(self.procs) + 1)
            await asyncio.sleep(self.spacing)
        return to_add

    async def launch(self, client_id):
        self.samples[client_id] = {"connected": False}
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                str(client_id),
                self.stream_url,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(f"Failed to launch client {client_id}: {e}")
            self.procs[client_id] = None
            self.failures += 1
            return None

        self.procs[client_id] = proc
        task = asyncio.create_task(self._follow(client_id, proc))
        self._followers.add(task)
        task.add_done_callback(self._followers.discard)
        return proc

    async def _follow(self, client_id, proc):
        async for line in proc.stdout:
            self.ingest_line(client_id, line)
        code = await proc.wait()
        self.failures += 1
        self.samples[client_id] = {**self.samples.get(client_id, {}), "connected": False}
        logger.warning(f"Client {client_id} exited with code {code}")

    def ingest_line(self, client_id, line):
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return False
        try:
            data = json.loads(line)
        except ValueError:
            logger.warning(f"Unparseable sample from client {client_id}: {line[:80]}")
            return False
        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object sample from client {client_id}")
            return False
        self.samples[client_id] = {**self.samples.get(client_id, {}), **data}
        return True

    def sample_list(self):
        return list(self.samples.values())

    async def shutdown(self):
        logger.info("Closing clients...")
        for proc in self.procs.values():
            if proc is not None and proc.returncode is None:
                proc.terminate()
        for proc in self.procs.values():
            if proc is not None:
                await proc.wait()
        for task in list(self._followers):
            task.cancel()


# ================= EXPORT =================
class QoeExporter:
    """Local Prometheus view of this node's client QoE, labelled by load step."""

    def __init__(self, registry=None):
        self.registry = registry or CollectorRegistry()
        labels = ["load_step"]
        self.connected = Gauge(
            "ome_qoe_connected_clients", "Number of connected clients", labels, registry=self.registry
        )
        self.avg_startup = Gauge(
            "ome_qoe_avg_startup_delay_ms", "Average startup delay (ms)", labels, registry=self.registry
        )
        self.avg_bitrate = Gauge("ome_qoe_avg_bitrate_bps", "Average bitrate (bps)", labels, registry=self.registry)
        self.avg_buffers = Gauge(
            "ome_qoe_avg_buffer_events", "Average buffering events per client", labels, registry=self.registry
        )
        self.avg_buffer_time = Gauge(
            "ome_qoe_avg_buffer_time_ms", "Average buffering time per client (ms)", labels, registry=self.registry
        )

    def update(self, summary, step):
        step = str(step)
        self.connected.labels(step).set(summary["connected"])
        self.avg_startup.labels(step).set(summary["avgStartup"] or 0)
        self.avg_bitrate.labels(step).set(summary["avgBitrate"] or 0)
        self.avg_buffers.labels(step).set(summary["avgBuffers"] or 0)
        self.avg_buffer_time.labels(step).set(summary["avgBufferTime"] or 0)

    def serve(self, port=METRICS_PORT):
        start_http_server(port, registry=self.registry)
        logger.info(f"Prometheus metrics at http://localhost:{port}/metrics")


CLIENT_COLUMNS = [
    ("id", "ClientID"),
    ("connected", "Connected"),
    ("startupDelay", "StartupDelay(ms)"),
    ("bufferEvents", "BufferEvents"),
    ("bufferTime", "BufferTime(ms)"),
    ("bitrate", "Bitrate(bps)"),
    ("frameDrops", "DroppedFrames"),
    ("playbackTime", "PlaybackTime(ms)"),
    ("error", "Error"),
    ("timestamp", "Timestamp"),
    ("loadStep", "LoadStep"),
]


class ClientRowWriter:
    """Appends one CSV row per client sample on every poll."""

    def __init__(self, path):
        self.path = path

    def write(self, samples, step, timestamp=None):
        timestamp = (timestamp or datetime.now(timezone.utc)).isoformat()
        with open(self.path, "a", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            if fh.tell() == 0:
                writer.writerow([title for _, title in CLIENT_COLUMNS])
            for client_id, sample in sorted(samples.items()):
                row = {**sample, "id": client_id, "timestamp": timestamp, "loadStep": step}
                writer.writerow([row.get(key, "") for key, _ in CLIENT_COLUMNS])
        return len(samples)


# ================= COORDINATOR LINK =================
class NodeAgent:
    def __init__(self, pool, url=COORDINATOR_URL, interval=REPORT_INTERVAL, exporter=None, rows=None):
        self.pool = pool
        self.exporter = exporter
        self.rows = rows
        self.url = url
        self.interval = interval
        self.node_id = None
        self.step = 0

    def build_report(self):
        metrics = summarize(self.pool.sample_list())
        metrics.update(collect_resources())
        metrics["clients"] = len(self.pool)
        metrics["failures"] = self.pool.failures
        return {"type": "report", "metrics": metrics}

    def poll(self):
        """Build the next report and publish it to the local exporter and CSV."""
        report = self.build_report()
        if self.exporter is not None:
            self.exporter.update(report["metrics"], self.step)
        if self.rows is not None:
            try:
                self.rows.write(self.pool.samples, self.step)
            except OSError as e:
                logger.error(f"Client CSV write failed: {e}")
        return report

    async def handle(self, ws, raw):
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Bad message from coordinator: {raw!r}")
            return

        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "register":
            self.node_id = data.get("nodeId")
            logger.info(f"Registered as {self.node_id}")
        elif kind == "ramp":
            try:
                target = int(data.get("clients") or 0)
            except (TypeError, ValueError):
                logger.warning(f"Bad ramp directive: {data!r}")
                return
            self.step = data.get("step", self.step)
            logger.info(f"[Coordinator] Step {self.step}, target {target} clients")
            await self.pool.scale_to(target)
            await ws.send(json.dumps(self.poll()))

    async def _report_loop(self, ws):
        while True:
            await asyncio.sleep(self.interval)
            report = self.poll()
            await ws.send(json.dumps(report))
            m = report["metrics"]
            logger.info(
                f"Load step {self.step}: {m['connected']}/{m['clients']} connected, "
                f"avgStartup={m['avgStartup']:.1f}ms, avgBitrate={m['avgBitrate'] / 1e6:.2f}Mbps"
            )

    async def session(self):
        async with websockets.connect(self.url) as ws:
            logger.info(f"Connected to coordinator at {self.url}")
            reporter = asyncio.create_task(self._report_loop(ws))
            try:
                async for raw in ws:
                    await self.handle(ws, raw)
            finally:
                reporter.cancel()
                with contextlib.suppress(asyncio.CancelledError, websockets.ConnectionClosed):
                    await reporter

    async def run(self):
        while True:
            try:
                await self.session()
                logger.warning("Coordinator closed the connection")
            except (OSError, websockets.WebSocketException) as e:
                logger.warning(f"Coordinator link failed: {e}")
            await asyncio.sleep(RECONNECT_DELAY)


# ================= LOOP =================
async def serve():
    pool = ClientPool()
    exporter = QoeExporter()
    exporter.serve(METRICS_PORT)
    rows = ClientRowWriter(CLIENT_CSV) if CLIENT_CSV else None
    agent = NodeAgent(pool, exporter=exporter, rows=rows)
    try:
        await agent.run()
    finally:
        await pool.shutdown()


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
    logger.info(f"Starting node agent: coordinator={COORDINATOR_URL}, stream={STREAM_URL}")
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
