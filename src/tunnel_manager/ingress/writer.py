"""Atomic writer for the tunnel's ingress file."""

import os
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..common.exceptions import IngressError, IngressReloadError, IngressWriteError, TunnelProcessError
from ..common.logging import get_logger
from ..interfaces import TunnelProcess
from ..topology.models import ReachableRoute
from .config import IngressConfig, IngressRule

logger = get_logger(__name__)


class IngressConfigWriter:
    """Owns the on-disk routing-rule file consumed by the tunnel process.

    Every change renders the complete file to a temporary sibling and
    renames it over the live file, then asks the tunnel for a graceful
    reload. One backup generation (``<file>.bak``) is kept; a failed
    reload restores it.

    All writes go through one lock, so changes for different hostnames
    never interleave.
    """

    def __init__(self, config_path: str | Path, tunnel_process: TunnelProcess):
        self.config_path = Path(config_path)
        self.backup_path = self.config_path.with_name(self.config_path.name + ".bak")
        self._tunnel = tunnel_process
        self._lock = threading.RLock()

    def load(self) -> IngressConfig:
        """Read and validate the live file.

        Raises:
            IngressError: If the file is missing or invalid
        """
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise IngressError(
                f"Cannot read ingress config {self.config_path}: {e}",
                recommendation="Create the tunnel with 'cloudflared tunnel create' and write its config.yml",
            ) from e
        return IngressConfig.from_yaml(text)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the writer lock across several reads and writes."""
        with self._lock:
            yield

    def list_rules(self) -> list[IngressRule]:
        return self.load().hostname_rules

    def has_rule(self, hostname: str) -> bool:
        return self.load().find(hostname) is not None

    def add_rule(self, hostname: str, route: ReachableRoute) -> None:
        """Route ``hostname`` to ``route`` and reload the tunnel.

        Raises:
            IngressWriteError: If a rule already exists or the file cannot be written
            IngressReloadError: If the tunnel rejected the reload (file rolled back)
        """
        self.insert_rule(IngressRule.for_service(hostname, route.service_url))

    def insert_rule(self, rule: IngressRule) -> None:
        """Insert a prepared rule just before the catch-all and reload."""
        if rule.is_catch_all:
            raise IngressWriteError("Only hostname rules can be inserted")
        with self._lock:
            config = self.load()
            if config.find(rule.hostname) is not None:
                raise IngressWriteError(f"Ingress rule for {rule.hostname} already exists")
            self._apply(config.with_rule(rule))
            logger.info("Ingress rule added", hostname=rule.hostname, service=rule.service)

    def remove_rule(self, hostname: str) -> bool:
        """Drop the rule for ``hostname`` and reload. False if there was none."""
        with self._lock:
            config = self.load()
            if config.find(hostname) is None:
                logger.debug("No ingress rule to remove", hostname=hostname)
                return False
            self._apply(config.without_rule(hostname))
            logger.info("Ingress rule removed", hostname=hostname)
            return True

    def replace_rules(self, rules: list[IngressRule]) -> None:
        """Rewrite every hostname rule at once, keeping the catch-all."""
        with self._lock:
            self._apply(self.load().with_rules(rules))
            logger.info("Ingress rules replaced", count=len(rules))

    def sync_rules(
        self, desired: list[IngressRule], keep: set[str] | None = None
    ) -> tuple[list[str], list[str]]:
        """Make the hostname rules match ``desired``.

        Hostnames in ``keep`` are left alone: their rules are neither added
        nor removed. Existing rules keep their order; missing ones are appended.
        Nothing is written when the file already matches.

        Returns:
            (added hostnames, removed hostnames)
        """
        keep = keep or set()
        wanted = {rule.hostname: rule for rule in desired}
        with self._lock:
            config = self.load()
            current = config.hostname_rules
            present = {rule.hostname for rule in current}

            removed = [
                rule.hostname
                for rule in current
                if rule.hostname not in wanted and rule.hostname not in keep
            ]
            added = [hostname for hostname in wanted if hostname not in present and hostname not in keep]
            if not added and not removed:
                return [], []

            rules = [rule for rule in current if rule.hostname not in removed]
            rules.extend(wanted[hostname] for hostname in added)
            self._apply(config.with_rules(rules))
            logger.info("Ingress rules synchronized", added=added, removed=removed)
            return added, removed

    def reload(self) -> None:
        """Ask the tunnel to re-read the file without dropping connections.

        Raises:
            IngressReloadError: If the tunnel could not be signalled
        """
        try:
            self._tunnel.reload()
        except (TunnelProcessError, OSError) as e:
            raise IngressReloadError(
                f"Tunnel reload failed: {e}", recommendation="Retry the operation"
            ) from e

    def _apply(self, config: IngressConfig) -> None:
        had_previous = self._backup()
        self._write(config)
        try:
            self.reload()
        except IngressReloadError:
            logger.error("Reload failed, rolling back ingress config", path=str(self.config_path))
            self._rollback(had_previous)
            raise

    def _backup(self) -> bool:
        if not self.config_path.exists():
            return False
        try:
            shutil.copy2(self.config_path, self.backup_path)
        except OSError as e:
            raise IngressWriteError(f"Cannot back up ingress config: {e}") from e
        return True

    def _write(self, config: IngressConfig) -> None:
        self._atomic_write(config.to_yaml())
        logger.debug("Ingress config written", path=str(self.config_path), rules=len(config.ingress))

    def _atomic_write(self, content: str) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.config_path.parent, prefix=f".{self.config_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if self.config_path.exists():
                shutil.copymode(self.config_path, temp_path)
            os.replace(temp_path, self.config_path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise IngressWriteError(
                f"Cannot write ingress config {self.config_path}: {e}"
            ) from e

    def _rollback(self, had_previous: bool) -> None:
        if not had_previous:
            self.config_path.unlink(missing_ok=True)
            return
        try:
            self._atomic_write(self.backup_path.read_text(encoding="utf-8"))
        except (OSError, IngressWriteError) as e:
            logger.critical("Ingress rollback failed", path=str(self.config_path), error=str(e))
            raise IngressWriteError(f"Ingress rollback failed: {e}") from e
