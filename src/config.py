"""Configuration: frozen dataclasses built from YAML, environment variables, and CLI flags.

Precedence, lowest to highest: dataclass defaults, YAML file, environment
variables, CLI flags.
"""

import argparse
import logging
import os
from dataclasses import dataclass, fields

import yaml

logger = logging.getLogger(__name__)


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _parse_list(value) -> tuple:
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return tuple(part.strip() for part in str(value).split(",") if part.strip())


def load_yaml_config(path: str | None) -> dict:
    """Load a YAML mapping from *path*. Returns an empty dict if there is none."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as exc:
        logger.warning("Invalid YAML in %s, using defaults: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping, using defaults", path)
        return {}
    logger.info("Loaded YAML config from %s", path)
    return data


def _coerce(cls, name: str, value):
    """Convert a raw YAML/env value to the type of dataclass field *name*."""
    default = getattr(cls, name)
    if isinstance(default, bool):
        return _parse_bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, tuple):
        return _parse_list(value)
    return str(value)


def _layer(cls, yaml_section: dict, env_names: dict) -> dict:
    """Merge YAML values and env overrides into constructor kwargs."""
    known = {f.name for f in fields(cls)}
    values = {}
    for key, raw in (yaml_section or {}).items():
        if key in known:
            values[key] = _coerce(cls, key, raw)
        else:
            logger.warning("Ignoring unknown config key %r", key)
    for name, env_var in env_names.items():
        raw = os.environ.get(env_var)
        if raw is not None:
            values[name] = _coerce(cls, name, raw)
    return values


@dataclass(frozen=True)
class PipelineConfig:
    production: bool = False
    ring_buffer_size: int = 500
    batch_size: int = 10
    flush_interval: float = 5.0
    periodic_sync_interval: float = 60.0
    retention_days: int = 30
    sweep_interval: float = 86400.0
    sweep_delay: float = 10.0
    cache_path: str = "telemetry_logs.db"
    remote_url: str = ""
    remote_timeout: float = 10.0
    local_query_limit: int = 1000
    top_issues: int = 10
    recent_errors: int = 20
    console_color: bool = True
    capture_unhandled: bool = True


_PIPELINE_ENV = {
    "ring_buffer_size": "RING_BUFFER_SIZE",
    "batch_size": "BATCH_SIZE",
    "flush_interval": "FLUSH_INTERVAL",
    "periodic_sync_interval": "PERIODIC_SYNC_INTERVAL",
    "retention_days": "RETENTION_DAYS",
    "sweep_interval": "SWEEP_INTERVAL",
    "sweep_delay": "SWEEP_DELAY",
    "cache_path": "CACHE_PATH",
    "remote_url": "REMOTE_URL",
    "remote_timeout": "REMOTE_TIMEOUT",
    "local_query_limit": "LOCAL_QUERY_LIMIT",
    "top_issues": "TOP_ISSUES",
    "recent_errors": "RECENT_ERRORS",
    "console_color": "CONSOLE_COLOR",
    "capture_unhandled": "CAPTURE_UNHANDLED",
}


def build_client_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Telemetry pipeline demo client")
    parser.add_argument("--config", type=str, default=None, help="YAML config file")
    parser.add_argument("--production", action="store_true", default=False)
    parser.add_argument("--remote-url", type=str, default=None)
    parser.add_argument("--cache-path", type=str, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--flush-interval", type=float, default=None)
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--no-color", action="store_true", default=False)
    parser.add_argument("--actor", type=str, default=None, help="Actor id to bind")
    parser.add_argument("--events", type=int, default=20, help="Sample events to emit")
    parser.add_argument("--export", type=str, default=None, help="Directory for the local export")
    parser.add_argument(
        "--analyze",
        type=int,
        default=None,
        help="Print an aggregate report for the last N days (1, 7, 14 or 30)",
    )
    return parser


def load_client_config(argv=None) -> tuple[PipelineConfig, argparse.Namespace]:
    """Build PipelineConfig from YAML, env vars, then CLI args.

    Pass argv for testability; when None, argparse reads sys.argv.
    Returns the config together with the parsed args so the entry point
    can read its run options (--actor, --events, ...).
    """
    parser = build_client_parser()
    args = parser.parse_args(argv)

    yaml_path = args.config or os.environ.get("TELEMETRY_CONFIG")
    yaml_data = load_yaml_config(yaml_path)
    values = _layer(PipelineConfig, yaml_data.get("pipeline", {}), _PIPELINE_ENV)

    env_mode = os.environ.get("TELEMETRY_ENV")
    if env_mode is not None:
        values["production"] = env_mode.strip().lower() == "production"

    if args.production:
        values["production"] = True
    if args.remote_url is not None:
        values["remote_url"] = args.remote_url
    if args.cache_path is not None:
        values["cache_path"] = args.cache_path
    if args.batch_size is not None:
        values["batch_size"] = args.batch_size
    if args.flush_interval is not None:
        values["flush_interval"] = args.flush_interval
    if args.retention_days is not None:
        values["retention_days"] = args.retention_days
    if args.no_color:
        values["console_color"] = False

    return PipelineConfig(**values), args


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    admin_actors: tuple = ()
    state_file: str = ""
    top_issues: int = 10
    recent_errors: int = 20


_SERVER_ENV = {
    "host": "SERVER_HOST",
    "port": "SERVER_PORT",
    "admin_actors": "ADMIN_ACTORS",
    "state_file": "STATE_FILE",
    "top_issues": "TOP_ISSUES",
    "recent_errors": "RECENT_ERRORS",
}


def load_server_config(argv=None) -> ServerConfig:
    """Build ServerConfig from YAML (``server`` section), env vars, then CLI args."""
    parser = argparse.ArgumentParser(description="Remote log store server")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--admin", action="append", default=None, help="Admin actor id")
    parser.add_argument("--state-file", type=str, default=None)
    args = parser.parse_args(argv)

    yaml_data = load_yaml_config(args.config or os.environ.get("TELEMETRY_CONFIG"))
    values = _layer(ServerConfig, yaml_data.get("server", {}), _SERVER_ENV)

    if args.host is not None:
        values["host"] = args.host
    if args.port is not None:
        values["port"] = args.port
    if args.admin:
        values["admin_actors"] = tuple(args.admin)
    if args.state_file is not None:
        values["state_file"] = args.state_file

    return ServerConfig(**values)
