"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

from dataclasses import dataclass, field
from typing import Optional

from .. import METRIC_PREFIX
from ..core.freeze import DEFAULT_FREEZE_COMMAND
from ..core.orchestrator import DEFAULT_LOCK_DIR, DEFAULT_LOCK_TIMEOUT
from ..core.polling import BackoffPolicy


@dataclass
class PollingConfig:
    """Backoff budget of one kind of wait.

    Attributes:
        initial_interval: Seconds to wait after the first attempt
        multiplier: Growth factor of the wait between attempts
        max_interval: Upper bound of a single wait in seconds
        max_attempts: Attempts before giving up
    """

    initial_interval: float = 5.0
    multiplier: float = 2.0
    max_interval: float = 120.0
    max_attempts: int = 10

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_interval=self.initial_interval,
            multiplier=self.multiplier,
            max_interval=self.max_interval,
            max_attempts=self.max_attempts,
        )


def _creation_polling() -> PollingConfig:
    return PollingConfig(initial_interval=5.0, multiplier=2.0, max_interval=60.0, max_attempts=20)


def _upload_polling() -> PollingConfig:
    return PollingConfig(
        initial_interval=30.0, multiplier=1.5, max_interval=600.0, max_attempts=60
    )


def _api_polling() -> PollingConfig:
    return PollingConfig(initial_interval=1.0, multiplier=2.0, max_interval=10.0, max_attempts=4)


@dataclass
class PollingSettings:
    """Budgets for snapshot creation, snapshot upload and single API calls."""

    creation: PollingConfig = field(default_factory=_creation_polling)
    upload: PollingConfig = field(default_factory=_upload_polling)
    api: PollingConfig = field(default_factory=_api_polling)


@dataclass
class HanaConfig:
    """Database connection defaults.

    Attributes:
        host: HANA host name
        user: Database user
        password_secret: Secret Manager secret holding the password
        hdbuserstore_key: hdbuserstore key used instead of user and password
        instance_id: HANA instance number
        port: SQL port, derived from instance_id when empty
        data_path: HANA data volume path, read from global.ini when empty
    """

    host: str = "localhost"
    user: str = ""
    password_secret: str = ""
    hdbuserstore_key: str = ""
    instance_id: str = ""
    port: str = ""
    data_path: str = ""


@dataclass
class GceConfig:
    """Compute Engine defaults, taken from the metadata server when empty."""

    project: str = ""
    zone: str = ""
    compute_api_version: str = "v1"


@dataclass
class FreezeConfig:
    command: str = DEFAULT_FREEZE_COMMAND


@dataclass
class MonitoringConfig:
    """Cloud Monitoring status reporting.

    Attributes:
        enabled: Send status and duration metrics
        metric_prefix: Prefix of the metric types
    """

    enabled: bool = True
    metric_prefix: str = METRIC_PREFIX


@dataclass
class GlobalConfig:
    """Global configuration settings.

    Attributes:
        log_file: Optional log file path
        lock_dir: Directory holding the per-SID run locks
        lock_timeout: Seconds to wait for a concurrent run of the same SID
    """

    log_file: Optional[str] = None
    lock_dir: str = DEFAULT_LOCK_DIR
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT


@dataclass
class Config:
    """Root configuration object."""

    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    hana: HanaConfig = field(default_factory=HanaConfig)
    gce: GceConfig = field(default_factory=GceConfig)
    freeze: FreezeConfig = field(default_factory=FreezeConfig)
    polling: PollingSettings = field(default_factory=PollingSettings)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
