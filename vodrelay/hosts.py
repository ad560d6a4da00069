import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from .config import Config
from .errors import RemoteExecError

logger = logging.getLogger("vodrelay.hosts")


@dataclass
class RemoteHost:
    host_id: str
    address: str
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    key_path: Optional[str] = None


class HostDirectory:
    """
    Maps host ids to SSH connection parameters and subjects to their host.
    Falls back to the env-configured host when no entry exists in the hosts file.
    """

    def __init__(self, base_cfg: Config, hosts_path: Optional[str] = None) -> None:
        self.base_cfg = base_cfg
        self.hosts_path = hosts_path or base_cfg.hosts_path
        self.default_host_id = str(base_cfg.default_host_id)
        self.hosts: Dict[str, RemoteHost] = {}
        self.subject_to_host: Dict[str, str] = {}
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self.hosts_path or not os.path.exists(self.hosts_path):
            return
        try:
            with open(self.hosts_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.exception(f"Failed to read hosts file {self.hosts_path}; using defaults")
            return
        for hid, params in (data.get("hosts") or {}).items():
            if not isinstance(params, dict) or not params.get("address"):
                logger.warning(f"Skipping host {hid}: missing address")
                continue
            self.hosts[str(hid)] = RemoteHost(
                host_id=str(hid),
                address=str(params["address"]),
                port=int(params.get("port") or 22),
                username=str(params.get("username") or self.base_cfg.ssh_username),
                password=params.get("password"),
                key_path=params.get("key_path"),
            )
        for subject, hid in (data.get("subjects") or {}).items():
            self.subject_to_host[str(subject)] = str(hid)
        if data.get("default_host") is not None:
            self.default_host_id = str(data["default_host"])

    def add_host(self, host: RemoteHost) -> None:
        self.hosts[str(host.host_id)] = host

    def get_host(self, host_id: str) -> RemoteHost:
        host = self.hosts.get(str(host_id))
        if host is not None:
            return host
        # Compose from base config for the default host
        if str(host_id) == self.default_host_id and self.base_cfg.ssh_host:
            return RemoteHost(
                host_id=self.default_host_id,
                address=self.base_cfg.ssh_host,
                port=self.base_cfg.ssh_port,
                username=self.base_cfg.ssh_username,
                password=self.base_cfg.ssh_password,
                key_path=self.base_cfg.ssh_key_path,
            )
        raise RemoteExecError(f"Unknown remote host {host_id}")

    def host_for_subject(self, subject_id: str) -> str:
        return self.subject_to_host.get(str(subject_id), self.default_host_id)
