"""Known-hosts lookup used to validate job targets."""

import logging
import os
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


class KnownHostsProvider(ABC):
    """Read-only source of valid target hosts."""

    @abstractmethod
    def hosts(self) -> List[str]:
        ...

    def is_known(self, host: str) -> bool:
        return host in self.hosts()


class StaticHostsProvider(KnownHostsProvider):
    """Fixed host list, typically from settings.known_hosts."""

    def __init__(self, hosts: Iterable[str]):
        # Keep the configured order but drop blanks and duplicates
        seen = []
        for host in hosts:
            host = host.strip()
            if host and host not in seen:
                seen.append(host)
        self._hosts = seen

    def hosts(self) -> List[str]:
        return list(self._hosts)


class FileHostsProvider(KnownHostsProvider):
    """Hosts file with one host per line. Re-read when its mtime changes.

    Blank lines and anything after a '#' are ignored.
    """

    def __init__(self, path: str):
        self._path = path
        self._mtime: Optional[float] = None
        self._hosts: List[str] = []
        self._warned_missing = False

    def hosts(self) -> List[str]:
        try:
            mtime = os.path.getmtime(self._path)
        except OSError:
            if not self._warned_missing:
                logger.warning("Known hosts file %s not found; no hosts available", self._path)
                self._warned_missing = True
            self._mtime = None
            self._hosts = []
            return []

        self._warned_missing = False
        if mtime != self._mtime:
            self._hosts = self._read()
            self._mtime = mtime
            logger.info("Loaded %d known host(s) from %s", len(self._hosts), self._path)
        return list(self._hosts)

    def _read(self) -> List[str]:
        hosts: List[str] = []
        with open(self._path, encoding="utf-8") as f:
            for raw in f:
                host = raw.split("#", 1)[0].strip()
                if host and host not in hosts:
                    hosts.append(host)
        return hosts
