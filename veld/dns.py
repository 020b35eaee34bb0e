"""DNS entries for non-``.localhost`` hosts via dnsmasq and the hosts file."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Iterator, Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

HOSTS_BEGIN_MARKER = "# BEGIN veld-managed"
HOSTS_END_MARKER = "# END veld-managed"
DEFAULT_HOSTS_PATH = Path("/etc/hosts")


class DnsError(Exception):
    """DNS configuration could not be written or the resolver not reloaded."""


def is_localhost_domain(hostname: str) -> bool:
    """Whether *hostname* is ``localhost`` or a subdomain of it (RFC 6761)."""
    return hostname == "localhost" or hostname.endswith(".localhost")


def _managed(entries: Mapping[str, str]) -> Iterator[tuple[str, str]]:
    return ((host, ip) for host, ip in entries.items() if not is_localhost_domain(host))


def _join_lines(lines: list[str]) -> str:
    return "".join(f"{line}\n" for line in lines)


def _split_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def build_dnsmasq_content(entries: Mapping[str, str]) -> str:
    """dnsmasq ``address=`` directives for every non-localhost entry, sorted."""
    return _join_lines(sorted(f"address=/{host}/{ip}" for host, ip in _managed(entries)))


def rebuild_hosts_file(existing: str, entries: Mapping[str, str]) -> str:
    """Replace the managed section of a hosts file, keeping everything else."""
    before: list[str] = []
    after: list[str] = []
    inside = False
    found_section = False

    for line in _split_lines(existing):
        stripped = line.strip()
        if stripped == HOSTS_BEGIN_MARKER:
            inside = found_section = True
            continue
        if stripped == HOSTS_END_MARKER:
            inside = False
            continue
        if inside:
            continue
        (after if found_section else before).append(line)

    managed = sorted(f"{ip}\t{host}" for host, ip in _managed(entries))
    section = [HOSTS_BEGIN_MARKER, *managed, HOSTS_END_MARKER] if managed else []
    return _join_lines([*before, *section, *after])


async def _run(*command: str) -> int:
    process = await asyncio.create_subprocess_exec(*command)
    return await process.wait()


async def _run_checked(*command: str, action: str) -> None:
    try:
        code = await _run(*command)
    except OSError as exc:
        raise DnsError(f"{action}: {exc}") from exc
    if code != 0:
        raise DnsError(f"{' '.join(command)} exited with {code}")


async def reload_dns() -> None:
    """Flush the system DNS cache (macOS) or restart dnsmasq (elsewhere)."""
    if sys.platform == "darwin":
        await _run_checked(
            "dscacheutil", "-flushcache", action="running dscacheutil -flushcache"
        )
        try:
            await _run("killall", "-HUP", "mDNSResponder")
        except OSError as exc:
            logger.debug("could not signal mDNSResponder: %s", exc)
    else:
        await _run_checked("systemctl", "restart", "dnsmasq", action="restarting dnsmasq")
    logger.info("DNS reloaded")


class DnsManager:
    """Keeps the managed host entries and mirrors them to disk."""

    def __init__(
        self,
        dnsmasq_conf: Path | str,
        hosts_path: Path | str = DEFAULT_HOSTS_PATH,
    ) -> None:
        self.dnsmasq_conf = Path(dnsmasq_conf)
        self.hosts_path = Path(hosts_path)
        self._entries: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def add_host(self, hostname: str, ip: str = "127.0.0.1") -> None:
        """Map *hostname* to *ip*; ``.localhost`` names need no file changes."""
        async with self._lock:
            self._entries[hostname] = ip
            if is_localhost_domain(hostname):
                logger.debug("skipping DNS write for .localhost domain %s", hostname)
                return
            self._write_files()
        logger.info("DNS entry added: %s -> %s", hostname, ip)

    async def remove_host(self, hostname: str) -> None:
        """Forget *hostname* and rewrite the managed files if needed."""
        async with self._lock:
            self._entries.pop(hostname, None)
            if is_localhost_domain(hostname):
                logger.debug("no DNS cleanup needed for .localhost domain %s", hostname)
                return
            self._write_files()
        logger.info("DNS entry removed: %s", hostname)

    async def entry_count(self) -> int:
        """Number of managed entries, ``.localhost`` ones included."""
        async with self._lock:
            return len(self._entries)

    def _write_files(self) -> None:
        self._write_dnsmasq_conf()
        self._write_hosts_file()

    def _write_dnsmasq_conf(self) -> None:
        parent = self.dnsmasq_conf.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DnsError(f"creating dir {parent}: {exc}") from exc
        try:
            self.dnsmasq_conf.write_text(
                build_dnsmasq_content(self._entries), encoding="utf-8"
            )
        except OSError as exc:
            raise DnsError(f"writing {self.dnsmasq_conf}: {exc}") from exc

    def _write_hosts_file(self) -> None:
        try:
            existing = self.hosts_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            existing = ""
        try:
            self.hosts_path.write_text(
                rebuild_hosts_file(existing, self._entries), encoding="utf-8"
            )
        except OSError as exc:
            raise DnsError(f"writing {self.hosts_path}: {exc}") from exc