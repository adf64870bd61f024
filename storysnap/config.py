from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import requests

from .models import PruningMode

logger = logging.getLogger(__name__)

_PROPERTIES_ENCODING = "utf-8"
_DEFAULT_PROPERTIES = "storysnap.properties"

DISCOVERY_URL = "https://snapshot-external-providers-api.krews.xyz/snapshots/itrocket"
KREWS_CATALOG_URL = "https://snapshots-api.krews.xyz/api/snapshots/story"
JNODE_CATALOG_URL = "https://snapshot-external-providers-api.krews.xyz/snapshots/jnode"
ITROCKET_STATE_TEMPLATE = "https://{host}/testnet/story/.current_state.json"

# Used when the discovery endpoint cannot be reached.
STATIC_ITROCKET_MIRRORS: Dict[PruningMode, List[str]] = {
    PruningMode.PRUNED: [
        ITROCKET_STATE_TEMPLATE.format(host="server-1.itrocket.net"),
        ITROCKET_STATE_TEMPLATE.format(host="server-3.itrocket.net"),
    ],
    PruningMode.ARCHIVE: [
        ITROCKET_STATE_TEMPLATE.format(host="server-5.itrocket.net"),
        ITROCKET_STATE_TEMPLATE.format(host="server-8.itrocket.net"),
    ],
}


@dataclass
class NodeLayout:
    """Filesystem targets of one node. Every path may be overridden."""

    home: str
    network: str = "odyssey"
    overrides: Dict[str, str] = field(default_factory=dict)

    def _path(self, key: str, default: str) -> str:
        return self.overrides.get(key) or default

    @property
    def story_dir(self) -> str:
        return self._path("storyDir", os.path.join(self.home, ".story"))

    @property
    def consensus_dir(self) -> str:
        return self._path("consensusDir", os.path.join(self.story_dir, "story"))

    @property
    def consensus_data_dir(self) -> str:
        return self._path("consensusDataDir", os.path.join(self.consensus_dir, "data"))

    @property
    def execution_root(self) -> str:
        return self._path("executionRoot", os.path.join(self.story_dir, "geth"))

    @property
    def execution_dir(self) -> str:
        return self._path(
            "executionDir", os.path.join(self.execution_root, self.network, "geth")
        )

    @property
    def execution_chaindata_dir(self) -> str:
        return self._path(
            "executionChaindataDir", os.path.join(self.execution_dir, "chaindata")
        )

    @property
    def validator_state(self) -> str:
        return self._path(
            "validatorState",
            os.path.join(self.consensus_data_dir, "priv_validator_state.json"),
        )

    @property
    def validator_state_backup(self) -> str:
        return self._path(
            "validatorStateBackup",
            os.path.join(self.consensus_dir, "priv_validator_state.json.backup"),
        )

    @property
    def lock_path(self) -> str:
        return self._path("lock", os.path.join(self.story_dir, ".storysnap.lock"))


@dataclass
class Settings:
    home: str = field(default_factory=lambda: os.path.expanduser("~"))
    network: str = "odyssey"
    services: Tuple[str, ...] = ("story", "story-geth")
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    discovery_url: str = DISCOVERY_URL
    krews_catalog_url: str = KREWS_CATALOG_URL
    jnode_catalog_url: str = JNODE_CATALOG_URL
    s3_config_dir: str = field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".config", "storysnap")
    )
    path_overrides: Dict[str, str] = field(default_factory=dict)

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)

    def layout(self, home: Optional[str] = None) -> NodeLayout:
        return NodeLayout(
            home=home or self.home,
            network=self.network,
            overrides=dict(self.path_overrides),
        )


def _parse_properties(path: str) -> Dict[str, str]:
    props: Dict[str, str] = {}
    with open(path, "r", encoding=_PROPERTIES_ENCODING) as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            props[key.strip()] = value.strip()
    return props


def _float_prop(props: Dict[str, str], key: str, default: float) -> float:
    raw = props.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Property {key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"Property {key} must be positive, got {raw!r}")
    return value


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load Settings from a .properties file.

    Resolution order:
    1. Explicit path argument, if provided (must exist).
    2. STORYSNAP_PROPERTIES env var (must exist).
    3. 'storysnap.properties' in the current working directory (optional).
    """
    required = True
    if path is None:
        path = os.environ.get("STORYSNAP_PROPERTIES")
        if path is None:
            path = _DEFAULT_PROPERTIES
            required = False

    if not os.path.exists(path):
        if required:
            raise FileNotFoundError(f"storysnap properties file not found: {path}")
        return Settings()

    props = _parse_properties(path)
    settings = Settings()

    if props.get("node.home"):
        settings.home = os.path.expanduser(props["node.home"])
    if props.get("node.network"):
        settings.network = props["node.network"]
    if props.get("node.services"):
        settings.services = tuple(
            name.strip() for name in props["node.services"].split(",") if name.strip()
        )
    settings.connect_timeout = _float_prop(props, "http.connectTimeout", settings.connect_timeout)
    settings.read_timeout = _float_prop(props, "http.readTimeout", settings.read_timeout)
    settings.discovery_url = props.get("discovery.itrocketUrl") or settings.discovery_url
    settings.krews_catalog_url = props.get("krews.catalogUrl") or settings.krews_catalog_url
    settings.jnode_catalog_url = props.get("jnode.catalogUrl") or settings.jnode_catalog_url
    if props.get("s3.configDir"):
        settings.s3_config_dir = os.path.expanduser(props["s3.configDir"])

    for key, value in props.items():
        if key.startswith("path.") and value:
            settings.path_overrides[key[len("path."):]] = os.path.expanduser(value)

    return settings


def discover_itrocket_mirrors(
    http: requests.Session,
    url: str = DISCOVERY_URL,
    timeout: Tuple[float, float] = (10.0, 60.0),
) -> Dict[PruningMode, List[str]]:
    """
    Resolve the per-mode mirror list from the discovery endpoint.

    The endpoint answers {"pruned": {key: host}, "archive": {key: host}}.
    Any failure falls back to STATIC_ITROCKET_MIRRORS with a warning.
    """
    try:
        resp = http.get(url, timeout=timeout)
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            raise ValueError("discovery response must be a JSON object")

        mirrors: Dict[PruningMode, List[str]] = {}
        for mode in PruningMode:
            hosts = payload.get(mode.value) or {}
            if not isinstance(hosts, dict):
                raise ValueError(f"discovery entry '{mode.value}' must be an object")
            mirrors[mode] = [
                ITROCKET_STATE_TEMPLATE.format(host=hosts[key])
                for key in sorted(hosts)
                if isinstance(hosts[key], str) and hosts[key]
            ]
    except (requests.RequestException, ValueError) as exc:
        logger.warning(
            "Mirror discovery via %s failed (%s); using static mirror list", url, exc
        )
        return {mode: list(urls) for mode, urls in STATIC_ITROCKET_MIRRORS.items()}

    for mode, urls in mirrors.items():
        if not urls:
            logger.warning(
                "Mirror discovery returned no %s mirrors; using static mirror list", mode
            )
            mirrors[mode] = list(STATIC_ITROCKET_MIRRORS[mode])
    return mirrors
