import os

# Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "9000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

RAMP_SEQUENCE = os.getenv("RAMP_SEQUENCE", "1,2,3,5,8,13,21,34,55,89,144,233,377,500")
RAMP_INTERVAL = float(os.getenv("RAMP_INTERVAL", "120"))  # seconds per step
WAIT_BACKOFF = float(os.getenv("WAIT_BACKOFF", "5"))  # re-check when no nodes
START_DELAY = float(os.getenv("START_DELAY", "5"))

STALE_THRESHOLD = float(os.getenv("STALE_THRESHOLD", "30"))  # seconds

REPORT_CSV = os.getenv("REPORT_CSV", "")


def parse_sequence(raw: str) -> list[int]:
    steps = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        value = int(part)
        if value < 0:
            raise ValueError(f"ramp step must be non-negative, got {value}")
        steps.append(value)
    if not steps:
        raise ValueError("ramp sequence is empty")
    return steps
