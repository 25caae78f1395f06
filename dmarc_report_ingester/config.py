import json
import ssl
from dataclasses import dataclass, field
from typing import IO, Any, Dict, Mapping, Optional

from dmarc_report_ingester.errors import ConfigurationError
from dmarc_report_ingester.imap_client import ConnectionConfig
from dmarc_report_ingester.ingestion import AfterProcessing
from dmarc_report_ingester.mailbox import MailboxFolders
from dmarc_report_ingester.scheduler import DEFAULT_INTERVAL_MS

DEFAULT_CONFIGURATION_FILE = "/etc/dmarc-report-ingester.json"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:////var/lib/dmarc-report-ingester/reports.db"


@dataclass
class ImapConfig:
    host: str
    username: str
    password: str = field(repr=False)
    port: int = 993
    use_ssl: bool = True
    verify_certificate: bool = True
    tls_minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    tls_maximum_version: ssl.TLSVersion = ssl.TLSVersion.MAXIMUM_SUPPORTED

    def to_connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            use_ssl=self.use_ssl,
            verify_certificate=self.verify_certificate,
            tls_minimum_version=self.tls_minimum_version,
            tls_maximum_version=self.tls_maximum_version,
        )


@dataclass
class FolderConfig:
    inbox: str = "INBOX"
    archive: str = "Archive"

    def to_mailbox_folders(self) -> MailboxFolders:
        return MailboxFolders(inbox=self.inbox, archive=self.archive)


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_ms: int = DEFAULT_INTERVAL_MS


# pylint: disable=too-many-instance-attributes
@dataclass
class Configuration:
    imap: ImapConfig
    folders: FolderConfig = field(default_factory=FolderConfig)
    after_processing: AfterProcessing = AfterProcessing.MARK_READ
    fetch_limit: Optional[int] = None
    connect_timeout_seconds: float = 10
    database_url: str = DEFAULT_DATABASE_URL
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: Dict[str, Any] = field(default_factory=dict)


def read_configuration_file(file: IO[str]) -> Dict[str, Any]:
    try:
        configuration = json.load(file)
    except json.JSONDecodeError as err:
        raise ConfigurationError(
            f"Configuration file is not valid JSON: {err}"
        ) from err
    if not isinstance(configuration, dict):
        raise ConfigurationError("Configuration file must contain a JSON object.")
    return configuration


def load_configuration(
    raw: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Configuration:
    """Build the configuration from parsed JSON and environment overrides.

    Supported environment variables are ``IMAP_HOST``, ``IMAP_PORT``,
    ``IMAP_USER``, ``IMAP_PASSWORD``, ``DATABASE_URL``,
    ``ENABLE_SCHEDULED_EMAIL_PROCESSING``, and
    ``EMAIL_PROCESSING_INTERVAL_MS``. They take precedence over the file.

    Raises :class:`ConfigurationError` for missing or invalid settings.
    """
    environ = environ or {}
    imap = dict(raw.get("imap", {}))
    for key, env_var in (
        ("host", "IMAP_HOST"),
        ("port", "IMAP_PORT"),
        ("username", "IMAP_USER"),
        ("password", "IMAP_PASSWORD"),
    ):
        if environ.get(env_var):
            imap[key] = environ[env_var]

    scheduler = dict(raw.get("scheduler", {}))
    if "ENABLE_SCHEDULED_EMAIL_PROCESSING" in environ:
        scheduler["enabled"] = environ["ENABLE_SCHEDULED_EMAIL_PROCESSING"]
    if environ.get("EMAIL_PROCESSING_INTERVAL_MS"):
        scheduler["interval_ms"] = environ["EMAIL_PROCESSING_INTERVAL_MS"]

    database_url = environ.get("DATABASE_URL") or raw.get(
        "database_url", DEFAULT_DATABASE_URL
    )

    return Configuration(
        imap=_parse_imap(imap),
        folders=FolderConfig(
            **_only_known(raw.get("folders", {}), "folders", FolderConfig)
        ),
        after_processing=_parse_after_processing(
            raw.get("after_processing", AfterProcessing.MARK_READ.value)
        ),
        fetch_limit=_parse_fetch_limit(raw.get("fetch_limit")),
        connect_timeout_seconds=_parse_positive_number(
            raw.get("connect_timeout_seconds", 10), "connect_timeout_seconds"
        ),
        database_url=str(database_url),
        scheduler=SchedulerConfig(
            enabled=_parse_bool(scheduler.get("enabled", True), "scheduler.enabled"),
            interval_ms=_parse_positive_int(
                scheduler.get("interval_ms", DEFAULT_INTERVAL_MS),
                "scheduler.interval_ms",
            ),
        ),
        logging=dict(raw.get("logging", {})),
    )


def _only_known(values: Mapping[str, Any], section: str, cls) -> Dict[str, Any]:
    known = set(cls.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {section} setting(s): {', '.join(sorted(unknown))}"
        )
    return dict(values)


def _parse_imap(imap: Dict[str, Any]) -> ImapConfig:
    _only_known(imap, "imap", ImapConfig)
    for key in ("host", "username", "password"):
        if not imap.get(key):
            raise ConfigurationError(f"Missing required IMAP setting: {key}")

    port = _parse_int(imap.get("port", 993), "imap.port")
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"IMAP port out of range: {port}")

    return ImapConfig(
        host=str(imap["host"]),
        username=str(imap["username"]),
        password=str(imap["password"]),
        port=port,
        use_ssl=_parse_bool(imap.get("use_ssl", True), "imap.use_ssl"),
        verify_certificate=_parse_bool(
            imap.get("verify_certificate", True), "imap.verify_certificate"
        ),
        tls_minimum_version=_parse_tls_version(
            imap.get("tls_minimum_version", ssl.TLSVersion.TLSv1_2)
        ),
        tls_maximum_version=_parse_tls_version(
            imap.get("tls_maximum_version", ssl.TLSVersion.MAXIMUM_SUPPORTED)
        ),
    )


def _parse_tls_version(value: Any) -> ssl.TLSVersion:
    if isinstance(value, ssl.TLSVersion):
        return value
    try:
        return ssl.TLSVersion[str(value)]
    except KeyError as err:
        raise ConfigurationError(f"Unknown TLS version: {value}") from err


def _parse_after_processing(value: Any) -> AfterProcessing:
    try:
        return AfterProcessing(value)
    except ValueError as err:
        allowed = ", ".join(mode.value for mode in AfterProcessing)
        raise ConfigurationError(
            f"Invalid after_processing {value!r}, must be one of: {allowed}"
        ) from err


def _parse_fetch_limit(value: Any) -> Optional[int]:
    if value is None:
        return None
    return _parse_positive_int(value, "fetch_limit")


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as err:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from err


def _parse_positive_int(value: Any, name: str) -> int:
    parsed = _parse_int(value, name)
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


def _parse_positive_number(value: Any, name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as err:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from err
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ConfigurationError(f"{name} must be true or false, got {value!r}")
