import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class MeteringConfig:
    interval_seconds: float = float(os.getenv("METERING_INTERVAL_SECONDS", "3600"))
    provider_timeout: float = float(os.getenv("METERING_PROVIDER_TIMEOUT", "30.0"))
    max_concurrency: int = int(os.getenv("METERING_MAX_CONCURRENCY", "10"))

    collect_samples: bool = os.getenv("METERING_COLLECT_SAMPLES", "true").lower() == "true"
    settle_previous_period: bool = os.getenv("METERING_SETTLE_PREVIOUS_PERIOD", "true").lower() == "true"

    archive_collection: str = os.getenv("METERING_ARCHIVE_COLLECTION", "metering_runs")
    archive_enabled: bool = os.getenv("METERING_ARCHIVE_ENABLED", "true").lower() == "true"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


metering_config = MeteringConfig()
