from .job import HourlyMeteringJob, TickReport
from .scheduler import MeteringScheduler
from .archive import MeteringRunArchive, get_run_archive
from .config import metering_config, MeteringConfig

__all__ = [
    "HourlyMeteringJob",
    "TickReport",
    "MeteringScheduler",
    "MeteringRunArchive",
    "get_run_archive",
    "metering_config",
    "MeteringConfig",
]
