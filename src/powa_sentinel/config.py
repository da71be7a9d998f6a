"""Load and validate sentinel configuration files (YAML)."""

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import yaml

from powa_sentinel.domain import ScenarioKind, Severity
from powa_sentinel.exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

RANK_BY_CHOICES = ("auto", "total_time", "mean_time", "cpu_time", "io_time")
NOTIFIER_TYPES = ("console", "wecom", "feishu", "dingtalk", "webhook", "sqs")
OVERFLOW_POLICIES = ("drop_oldest", "reject")


def parse_duration(value: Any) -> timedelta:
    """Parse ``30s``, ``5m``, ``1h30m`` style durations; bare numbers are seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, int | float):
        return timedelta(seconds=value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    position = 0
    total = timedelta()
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def expand_env_vars(text: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` patterns."""

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        return os.environ.get(name, default if default is not None else "")

    return _ENV_PATTERN.sub(_replace, text)


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    host: str = "127.0.0.1"
    port: int = 5432
    user: str = "powa_readonly"
    password: str = ""
    dbname: str = "powa"
    sslmode: str = "disable"

    def dsn(self) -> str:
        return (
            f"host={self.host} port={self.port} user={self.user} "
            f"password={self.password} dbname={self.dbname} sslmode={self.sslmode}"
        )


@dataclass(frozen=True, slots=True)
class InstanceConfig:
    id: str
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server_id: int = 0
    interval: timedelta = timedelta(minutes=5)
    timeout: timedelta = timedelta(seconds=30)


@dataclass(frozen=True, slots=True)
class SeverityThresholds:
    """Evidence metric and the values at which a finding escalates to L2/L3."""

    metric: str
    l2: float
    l3: float


@dataclass(frozen=True, slots=True)
class SlowQueryRule:
    enabled: bool = True
    top_n: int = 10
    rank_by: str = "auto"
    min_duration_ms: float = 1000.0
    severity: SeverityThresholds = SeverityThresholds("total_time_ms", 10_000.0, 60_000.0)


@dataclass(frozen=True, slots=True)
class AbnormalGrowthRule:
    enabled: bool = True
    multiplier: float = 3.0
    min_calls: int = 10
    min_idle_total_time_ms: float = 1000.0
    severity: SeverityThresholds = SeverityThresholds("growth_ratio", 5.0, 10.0)


@dataclass(frozen=True, slots=True)
class RegressionRule:
    enabled: bool = True
    threshold_percent: float = 50.0
    consecutive_cycles: int = 2
    smoothing: float = 0.3
    min_calls: int = 1
    ttl: timedelta = timedelta(hours=24)
    max_tracked: int = 10_000
    severity: SeverityThresholds = SeverityThresholds("change_percent", 100.0, 200.0)


@dataclass(frozen=True, slots=True)
class MissingIndexRule:
    enabled: bool = True
    min_calls: int = 1
    min_rows_filtered: int = 0
    min_improvement_percent: float = 30.0
    severity: SeverityThresholds = SeverityThresholds("estimated_improvement", 50.0, 80.0)


@dataclass(frozen=True, slots=True)
class RulesConfig:
    slow_query: SlowQueryRule = field(default_factory=SlowQueryRule)
    abnormal_growth: AbnormalGrowthRule = field(default_factory=AbnormalGrowthRule)
    regression: RegressionRule = field(default_factory=RegressionRule)
    missing_index: MissingIndexRule = field(default_factory=MissingIndexRule)

    def severity_table(self) -> dict[ScenarioKind, SeverityThresholds]:
        return {
            ScenarioKind.SLOW_QUERY_TOP_N: self.slow_query.severity,
            ScenarioKind.ABNORMAL_GROWTH: self.abnormal_growth.severity,
            ScenarioKind.REGRESSION: self.regression.severity,
            ScenarioKind.MISSING_INDEX: self.missing_index.severity,
        }


@dataclass(frozen=True, slots=True)
class SuppressionConfig:
    window: timedelta = timedelta(hours=6)
    retention_multiplier: float = 4.0
    escalate_on_severity_increase: bool = False


@dataclass(frozen=True, slots=True)
class ChannelConfig:
    name: str
    type: str = "console"
    webhook_url: str | None = None
    queue_url: str | None = None
    region: str = "us-east-1"


@dataclass(frozen=True, slots=True)
class NotifierConfig:
    channels: tuple[ChannelConfig, ...] = (ChannelConfig(name="console"),)
    routing: dict[Severity, tuple[str, ...]] = field(default_factory=dict)
    retries: int = 3
    retry_delay: timedelta = timedelta(seconds=1)
    timeout: timedelta = timedelta(seconds=10)
    queue_size: int = 100
    overflow: str = "drop_oldest"
    workers: int = 1


@dataclass(frozen=True, slots=True)
class SentinelConfig:
    instances: tuple[InstanceConfig, ...]
    rules: RulesConfig = field(default_factory=RulesConfig)
    suppression: SuppressionConfig = field(default_factory=SuppressionConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    log_level: str = "INFO"


def load_config(path: str) -> SentinelConfig:
    """Load a sentinel configuration from a YAML file.

    Raises:
        ConfigError: If the file is missing, unreadable, or invalid.
    """
    if not os.path.isfile(path):
        raise ConfigError(f"config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(expand_env_vars(f.read()))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("config must be a mapping at the top level")

    return build_config(raw)


def build_config(raw: dict[str, Any]) -> SentinelConfig:
    """Construct and validate a SentinelConfig from a raw dict."""
    errors: list[str] = []

    instances = _parse_instances(raw, errors)
    rules = _parse_rules(_section(raw, "rules", errors), errors)
    suppression = _parse_suppression(_section(raw, "suppression", errors), errors)
    notifier = _parse_notifier(_section(raw, "notifier", errors), errors)

    logging_raw = _section(raw, "logging", errors)
    log_level = str(logging_raw.get("level", "INFO")).upper()

    if errors:
        raise ConfigError("configuration errors:\n  - " + "\n  - ".join(errors))

    return SentinelConfig(
        instances=instances,
        rules=rules,
        suppression=suppression,
        notifier=notifier,
        log_level=log_level,
    )


def _section(raw: dict[str, Any], key: str, errors: list[str]) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"'{key}' must be a mapping")
        return {}
    return value


def _duration(raw: dict[str, Any], key: str, default: timedelta, where: str, errors: list[str]) -> timedelta:
    if key not in raw:
        return default
    try:
        value = parse_duration(raw[key])
    except ValueError as exc:
        errors.append(f"{where}.{key} is invalid: {exc}")
        return default
    if value <= timedelta():
        errors.append(f"{where}.{key} must be positive")
        return default
    return value


def _number(raw: dict[str, Any], key: str, default: float, where: str, errors: list[str], minimum: float = 0) -> float:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int | float):
        errors.append(f"{where}.{key} must be a number")
        return default
    if value < minimum:
        errors.append(f"{where}.{key} must be at least {minimum}")
        return default
    return value


def _parse_instances(raw: dict[str, Any], errors: list[str]) -> tuple[InstanceConfig, ...]:
    items = raw.get("instances")
    if items is None and "database" in raw:
        # single-instance shorthand
        items = [{"id": "default", "database": raw["database"], **_section(raw, "schedule", errors)}]
    if not isinstance(items, list) or not items:
        errors.append("'instances' is required and must be a non-empty list")
        return ()

    instances: list[InstanceConfig] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        where = f"instances[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{where} must be a mapping")
            continue
        instance_id = item.get("id")
        if not instance_id or not isinstance(instance_id, str):
            errors.append(f"{where}.id is required and must be a non-empty string")
            continue
        if instance_id in seen:
            errors.append(f"{where}.id '{instance_id}' is duplicated")
            continue
        seen.add(instance_id)

        db_raw = item.get("database") or {}
        if not isinstance(db_raw, dict):
            errors.append(f"{where}.database must be a mapping")
            db_raw = {}
        defaults = DatabaseConfig()
        database = DatabaseConfig(
            host=str(db_raw.get("host") or defaults.host),
            port=int(_number(db_raw, "port", defaults.port, f"{where}.database", errors, minimum=1)),
            user=str(db_raw.get("user") or defaults.user),
            password=str(db_raw.get("password") or defaults.password),
            dbname=str(db_raw.get("dbname") or defaults.dbname),
            sslmode=str(db_raw.get("sslmode") or defaults.sslmode),
        )
        instances.append(
            InstanceConfig(
                id=instance_id,
                database=database,
                server_id=int(_number(item, "server_id", 0, where, errors)),
                interval=_duration(item, "interval", timedelta(minutes=5), where, errors),
                timeout=_duration(item, "timeout", timedelta(seconds=30), where, errors),
            )
        )
    return tuple(instances)


def _parse_thresholds(
    raw: dict[str, Any], default: SeverityThresholds, where: str, errors: list[str]
) -> SeverityThresholds:
    sev = raw.get("severity")
    if sev is None:
        return default
    if not isinstance(sev, dict):
        errors.append(f"{where}.severity must be a mapping")
        return default
    l2 = _number(sev, "l2", default.l2, f"{where}.severity", errors)
    l3 = _number(sev, "l3", default.l3, f"{where}.severity", errors)
    if l3 < l2:
        errors.append(f"{where}.severity.l3 must not be lower than l2")
        return default
    return SeverityThresholds(metric=default.metric, l2=l2, l3=l3)


def _parse_rules(raw: dict[str, Any], errors: list[str]) -> RulesConfig:
    slow_raw = _section(raw, "slow_query", errors)
    growth_raw = _section(raw, "abnormal_growth", errors)
    regression_raw = _section(raw, "regression", errors)
    index_raw = _section(raw, "missing_index", errors)

    slow_default = SlowQueryRule()
    rank_by = str(slow_raw.get("rank_by", slow_default.rank_by))
    if rank_by not in RANK_BY_CHOICES:
        errors.append(f"rules.slow_query.rank_by must be one of: {', '.join(RANK_BY_CHOICES)}")
        rank_by = slow_default.rank_by
    slow = SlowQueryRule(
        enabled=bool(slow_raw.get("enabled", True)),
        top_n=int(_number(slow_raw, "top_n", slow_default.top_n, "rules.slow_query", errors, minimum=1)),
        rank_by=rank_by,
        min_duration_ms=_number(slow_raw, "min_duration_ms", slow_default.min_duration_ms, "rules.slow_query", errors),
        severity=_parse_thresholds(slow_raw, slow_default.severity, "rules.slow_query", errors),
    )

    growth_default = AbnormalGrowthRule()
    growth = AbnormalGrowthRule(
        enabled=bool(growth_raw.get("enabled", True)),
        multiplier=_number(growth_raw, "multiplier", growth_default.multiplier, "rules.abnormal_growth", errors, minimum=1),
        min_calls=int(_number(growth_raw, "min_calls", growth_default.min_calls, "rules.abnormal_growth", errors)),
        min_idle_total_time_ms=_number(
            growth_raw, "min_idle_total_time_ms", growth_default.min_idle_total_time_ms, "rules.abnormal_growth", errors
        ),
        severity=_parse_thresholds(growth_raw, growth_default.severity, "rules.abnormal_growth", errors),
    )

    reg_default = RegressionRule()
    smoothing = _number(regression_raw, "smoothing", reg_default.smoothing, "rules.regression", errors)
    if not 0 < smoothing <= 1:
        errors.append("rules.regression.smoothing must be in (0, 1]")
        smoothing = reg_default.smoothing
    regression = RegressionRule(
        enabled=bool(regression_raw.get("enabled", True)),
        threshold_percent=_number(
            regression_raw, "threshold_percent", reg_default.threshold_percent, "rules.regression", errors
        ),
        consecutive_cycles=int(
            _number(regression_raw, "consecutive_cycles", reg_default.consecutive_cycles, "rules.regression", errors, minimum=1)
        ),
        smoothing=smoothing,
        min_calls=int(_number(regression_raw, "min_calls", reg_default.min_calls, "rules.regression", errors)),
        ttl=_duration(regression_raw, "ttl", reg_default.ttl, "rules.regression", errors),
        max_tracked=int(_number(regression_raw, "max_tracked", reg_default.max_tracked, "rules.regression", errors, minimum=1)),
        severity=_parse_thresholds(regression_raw, reg_default.severity, "rules.regression", errors),
    )

    index_default = MissingIndexRule()
    missing_index = MissingIndexRule(
        enabled=bool(index_raw.get("enabled", True)),
        min_calls=int(_number(index_raw, "min_calls", index_default.min_calls, "rules.missing_index", errors)),
        min_rows_filtered=int(
            _number(index_raw, "min_rows_filtered", index_default.min_rows_filtered, "rules.missing_index", errors)
        ),
        min_improvement_percent=_number(
            index_raw, "min_improvement_percent", index_default.min_improvement_percent, "rules.missing_index", errors
        ),
        severity=_parse_thresholds(index_raw, index_default.severity, "rules.missing_index", errors),
    )

    return RulesConfig(
        slow_query=slow,
        abnormal_growth=growth,
        regression=regression,
        missing_index=missing_index,
    )


def _parse_suppression(raw: dict[str, Any], errors: list[str]) -> SuppressionConfig:
    default = SuppressionConfig()
    return SuppressionConfig(
        window=_duration(raw, "window", default.window, "suppression", errors),
        retention_multiplier=_number(
            raw, "retention_multiplier", default.retention_multiplier, "suppression", errors, minimum=1
        ),
        escalate_on_severity_increase=bool(raw.get("escalate_on_severity_increase", False)),
    )


def _parse_notifier(raw: dict[str, Any], errors: list[str]) -> NotifierConfig:
    default = NotifierConfig()

    channels: list[ChannelConfig] = []
    channels_raw = raw.get("channels")
    if channels_raw is None:
        channels = list(default.channels)
    elif not isinstance(channels_raw, list) or not channels_raw:
        errors.append("notifier.channels must be a non-empty list")
    else:
        for index, item in enumerate(channels_raw):
            where = f"notifier.channels[{index}]"
            if not isinstance(item, dict) or not item.get("name"):
                errors.append(f"{where} must be a mapping with a 'name'")
                continue
            channel_type = str(item.get("type", "console"))
            if channel_type not in NOTIFIER_TYPES:
                errors.append(f"{where}.type must be one of: {', '.join(NOTIFIER_TYPES)}")
                continue
            if channel_type not in ("console", "sqs") and not item.get("webhook_url"):
                errors.append(f"{where}.webhook_url is required when type is '{channel_type}'")
                continue
            if channel_type == "sqs" and not item.get("queue_url"):
                errors.append(f"{where}.queue_url is required when type is 'sqs'")
                continue
            channels.append(
                ChannelConfig(
                    name=str(item["name"]),
                    type=channel_type,
                    webhook_url=item.get("webhook_url"),
                    queue_url=item.get("queue_url"),
                    region=str(item.get("region", "us-east-1")),
                )
            )

    names = {channel.name for channel in channels}
    routing: dict[Severity, tuple[str, ...]] = {}
    routing_raw = raw.get("routing") or {}
    if not isinstance(routing_raw, dict):
        errors.append("notifier.routing must be a mapping")
        routing_raw = {}
    for level, targets in routing_raw.items():
        try:
            severity = Severity[str(level).upper()]
        except KeyError:
            errors.append(f"notifier.routing key '{level}' must be one of: L1, L2, L3")
            continue
        if isinstance(targets, str):
            targets = [targets]
        unknown = [t for t in targets if t not in names]
        if unknown:
            errors.append(f"notifier.routing.{severity.name} references unknown channels: {', '.join(unknown)}")
            continue
        routing[severity] = tuple(targets)

    overflow = str(raw.get("overflow", default.overflow))
    if overflow not in OVERFLOW_POLICIES:
        errors.append(f"notifier.overflow must be one of: {', '.join(OVERFLOW_POLICIES)}")
        overflow = default.overflow

    return NotifierConfig(
        channels=tuple(channels),
        routing=routing,
        retries=int(_number(raw, "retries", default.retries, "notifier", errors)),
        retry_delay=_duration(raw, "retry_delay", default.retry_delay, "notifier", errors),
        timeout=_duration(raw, "timeout", default.timeout, "notifier", errors),
        queue_size=int(_number(raw, "queue_size", default.queue_size, "notifier", errors, minimum=1)),
        overflow=overflow,
        workers=int(_number(raw, "workers", default.workers, "notifier", errors, minimum=1)),
    )
