"""
Environment-selected configuration for a Shrimpl program.

The file is `config/config.<env>.(json|yaml|yml|toml)`, where env comes
from the caller, then SHRIMPL_ENV, then "dev". Example (JSON):

    {
      "server":   { "port": 3000, "tls": false },
      "types":    { "functions": { "add": { "params": ["number", "number"], "result": "number" } } },
      "secrets":  { "env": { "OPENAI": "SHRIMPL_OPENAI_API_KEY" } },
      "values":   { "greeting": "Hello Shrimpl", "threshold": 0.75 },
      "auth":     { "jwt_secret_env": "SHRIMPL_JWT_SECRET", "protected_paths": ["/secure"] },
      "validation": { "schemas": { "/login": { "type": "object" } } }
    }

A missing file yields the defaults. An unreadable or malformed file also
yields the defaults, with a warning on stderr.
"""
import dataclasses
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from shrimpl.shrimpl_datatypes import Program, ServerDecl
from shrimpl.shrimpl_diagnostics import FunctionType, load_annotations
from shrimpl.shrimpl_serialize import deserialize, detect_format, SerializationError

DEFAULT_ENV = "dev"
CONFIG_EXTENSIONS = (".json", ".yaml", ".yml", ".toml")


def _warn(message: str):
    print(f"[shrimpl-config] {message}", file=sys.stderr)


@dataclass
class ShrimplConfig:
    env: str = DEFAULT_ENV
    path: Optional[Path] = None
    port: Optional[int] = None
    tls: Optional[bool] = None
    annotations: Dict[str, FunctionType] = field(default_factory=dict)
    secrets_env: Dict[str, str] = field(default_factory=dict)
    values: Dict[str, Any] = field(default_factory=dict)
    auth: Dict[str, Any] = field(default_factory=dict)
    validation: Dict[str, Any] = field(default_factory=dict)


def config_path(env_name: Optional[str] = None, base_dir=None) -> Optional[Path]:
    env = env_name or os.environ.get("SHRIMPL_ENV") or DEFAULT_ENV
    root = Path(base_dir) if base_dir is not None else Path.cwd()
    for ext in CONFIG_EXTENSIONS:
        candidate = root / "config" / f"config.{env}{ext}"
        if candidate.is_file():
            return candidate
    return None


def _section(doc: dict, name: str) -> dict:
    value = doc.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        _warn(f"section '{name}' must be a mapping; ignoring it")
        return {}
    return value


def load_config(env_name: Optional[str] = None, base_dir=None) -> ShrimplConfig:
    env = env_name or os.environ.get("SHRIMPL_ENV") or DEFAULT_ENV
    cfg = ShrimplConfig(env=env)
    path = config_path(env, base_dir)
    if path is None:
        return cfg

    try:
        raw = path.read_bytes()
        doc = deserialize(raw, fmt=detect_format(filename=path.name), strict=True)
    except (OSError, SerializationError, ValueError) as e:
        _warn(f"could not load {path}: {e}; using defaults")
        return cfg
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        _warn(f"{path} must contain a mapping at the top level; using defaults")
        return cfg

    cfg.path = path
    server = _section(doc, "server")
    port = server.get("port")
    if port is not None:
        if isinstance(port, int) and not isinstance(port, bool) and 0 <= port <= 65535:
            cfg.port = port
        else:
            _warn(f"ignoring invalid server.port {port!r}")
    tls = server.get("tls")
    if tls is not None:
        if isinstance(tls, bool):
            cfg.tls = tls
        else:
            _warn(f"ignoring invalid server.tls {tls!r}")

    cfg.annotations = load_annotations(_section(doc, "types").get("functions"))
    secrets_env = _section(doc, "secrets").get("env") or {}
    cfg.secrets_env = {str(k): str(v) for k, v in secrets_env.items()} if isinstance(secrets_env, dict) else {}
    cfg.values = dict(_section(doc, "values"))
    cfg.auth = dict(_section(doc, "auth"))
    cfg.validation = dict(_section(doc, "validation"))
    return cfg


def apply_server_overrides(program: Program, cfg: ShrimplConfig) -> Program:
    """Returns a Program whose server declaration carries the configured port/tls."""
    if cfg.port is None and cfg.tls is None:
        return program
    current = program.server or ServerDecl(port=0)
    server = ServerDecl(
        port=cfg.port if cfg.port is not None else current.port,
        tls=cfg.tls if cfg.tls is not None else current.tls,
        line=current.line,
        column=current.column,
    )
    if program.server is not None:
        decls = tuple(server if d is program.server else d for d in program.declarations)
    else:
        decls = (server,) + program.declarations
    return dataclasses.replace(program, server=server, declarations=decls)


__all__ = [
    "ShrimplConfig",
    "load_config",
    "config_path",
    "apply_server_overrides",
]
