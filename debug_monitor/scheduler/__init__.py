from .job_scheduler import JobScheduler, parse_cron
from .monitor import MonitorScheduler, channels_from_settings

__all__ = ["JobScheduler", "MonitorScheduler", "channels_from_settings", "parse_cron"]
