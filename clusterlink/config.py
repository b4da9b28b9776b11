"""Cluster link configuration (read-only JSON settings)."""

import html
import json
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from prompt_toolkit import HTML

from .constants import CONFIG_FILE, DEFAULT_CLUSTER_PORT, RELAY_HOST, RELAY_PORT
from .utils import print_debug, print_error, print_header, print_pt


@dataclass(frozen=True)
class ClusterDefinition:
    """One upstream cluster endpoint and its login script."""

    name: str
    host: str
    port: int = DEFAULT_CLUSTER_PORT
    auto_login: bool = False
    default_commands: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "ClusterDefinition":
        """Build a definition from a config file entry.

        Raises:
            ValueError: if the entry is missing a name/host, has a bad port
                or its default_commands is not a list or string
        """
        name = str(data.get("name", "")).strip()
        host = str(data.get("host", "")).strip()
        if not name:
            raise ValueError("cluster entry has no name")
        if not host:
            raise ValueError(f"cluster '{name}' has no host")

        port = _parse_port(data.get("port", DEFAULT_CLUSTER_PORT))
        if port is None:
            raise ValueError(f"cluster '{name}' has invalid port {data.get('port')!r}")

        commands = data.get("default_commands") or ()
        if isinstance(commands, str):
            commands = commands.splitlines()
        elif not isinstance(commands, (list, tuple)):
            raise ValueError(f"cluster '{name}' default_commands must be a list or string")

        return cls(
            name=name,
            host=host,
            port=port,
            auto_login=_parse_bool(data.get("auto_login", False)),
            default_commands=tuple(str(c) for c in commands),
        )


DEFAULT_CLUSTERS = [
    {
        "name": "dxcluster.org",
        "host": "dxcluster.org",
        "port": 7000,
        "auto_login": False,
    },
    {
        "name": "dxspots.com",
        "host": "dxspots.com",
        "port": 7300,
        "auto_login": False,
        "default_commands": [
            "# useful cluster commands, sent after every login",
            "SET/NOFILTER  # start without a spot filter",
            "SH/DX 10",
        ],
    },
]


class ClusterConfig:
    """Cluster list, login credential and relay settings."""

    def __init__(self, config_file=None):
        if config_file is None:
            config_file = os.path.expanduser(CONFIG_FILE)

        self.config_file = config_file

        self.settings = {
            "MYCALL": "",  # Login credential sent to clusters
            "CLUSTERS": [dict(c) for c in DEFAULT_CLUSTERS],
            "AUTO_CONNECT": "",  # Cluster name to connect at startup
            "RELAY_ENABLED": "ON",
            "RELAY_HOST": RELAY_HOST,  # Loopback only by default
            "RELAY_PORT": str(RELAY_PORT),
        }
        self.clusters: Dict[str, ClusterDefinition] = {}
        self.load()

    def load(self):
        """Load configuration from file (defaults are kept for missing keys)."""
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, "r") as f:
                    saved = json.load(f)
                if isinstance(saved, dict):
                    self.settings.update({k.upper(): v for k, v in saved.items()})
                    print_debug(f"Loaded cluster config from {self.config_file}", level=6)
                else:
                    print_error(f"Ignoring {self.config_file}: top level is not an object")
            except (OSError, ValueError) as e:
                print_error(f"Could not load cluster config {self.config_file}: {e}")

        self.clusters = self._build_clusters(self.settings.get("CLUSTERS") or [])

    def _build_clusters(self, entries) -> Dict[str, ClusterDefinition]:
        clusters: Dict[str, ClusterDefinition] = {}
        if not isinstance(entries, (list, tuple)):
            print_error(f"Ignoring CLUSTERS: expected a list, got {type(entries).__name__}")
            return clusters
        for entry in entries:
            if not isinstance(entry, dict):
                print_error(f"Skipping cluster entry {entry!r}: not an object")
                continue
            try:
                definition = ClusterDefinition.from_dict(entry)
            except ValueError as e:
                print_error(f"Skipping cluster entry: {e}")
                continue
            if definition.name in clusters:
                print_error(f"Skipping duplicate cluster '{definition.name}'")
                continue
            clusters[definition.name] = definition
        return clusters

    def get(self, key):
        """Get a configuration value."""
        return self.settings.get(key.upper(), "")

    def set(self, key, value):
        """Override a value for this session (never written back)."""
        key = key.upper()
        if key not in self.settings:
            return False
        if key == "RELAY_PORT" and _parse_port(value) is None:
            print_error(f"Invalid port '{value}': must be between 1 and 65535")
            return False
        self.settings[key] = value
        if key == "CLUSTERS":
            self.clusters = self._build_clusters(value or [])
        return True

    @property
    def mycall(self) -> str:
        return str(self.settings.get("MYCALL") or "").strip()

    @property
    def relay_enabled(self) -> bool:
        return _parse_bool(self.settings.get("RELAY_ENABLED", "ON"))

    @property
    def relay_host(self) -> str:
        return str(self.settings.get("RELAY_HOST") or RELAY_HOST)

    @property
    def relay_port(self) -> int:
        port = _parse_port(self.settings.get("RELAY_PORT"))
        return port if port is not None else RELAY_PORT

    @property
    def auto_connect(self) -> str:
        return str(self.settings.get("AUTO_CONNECT") or "").strip()

    def cluster_names(self) -> List[str]:
        return list(self.clusters)

    def get_cluster(self, name: str) -> Optional[ClusterDefinition]:
        return self.clusters.get(name)

    def display(self):
        """Display all settings."""
        print_header("Cluster Link Configuration")
        for key in sorted(self.settings.keys()):
            if key == "CLUSTERS":
                continue
            value = self.settings[key]
            if value:
                print_pt(HTML(f"<b>{key:14s}</b> {html.escape(str(value))}"))
            else:
                print_pt(HTML(f"<gray>{key:14s} (not set)</gray>"))
        print_pt("")


def _parse_port(value) -> Optional[int]:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return None
    if not (1 <= port <= 65535):
        return None
    return port


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().upper() in ("ON", "TRUE", "YES", "1")
