"""Backup job: pg_dump -> gzip -> commit into a git repository -> prune."""

import filecmp
import gzip
import logging
import os
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import settings
from .errors import IntegrationError

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., tuple[int, str, str]]

DUMP_FLAGS: dict[str, list[str]] = {
    "full": [],
    "incremental": [],  # pg_dump has no incremental mode; taken as a full dump
    "schema_only": ["--schema-only"],
    "data_only": ["--data-only"],
}


def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    timeout: int = 120,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run a command and return exit code, stdout, stderr."""
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, "", "Command timed out"
    except FileNotFoundError:
        return -1, "", f"Command not found: {cmd[0]}"


def _first_line(text: str) -> str:
    text = text.strip()
    return text.splitlines()[0] if text else "no output"


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


@dataclass
class BackupResult:
    """Outcome of one backup run."""

    file_name: str
    size_bytes: int
    backup_type: str
    commit_hash: str | None = None
    committed: bool = False
    pushed: bool = False
    unchanged: bool = False
    pruned: list[str] = field(default_factory=list)

    def summary(self) -> str:
        pending = f"; pushed pending commit {self.commit_hash}" if self.pushed and not self.committed else ""
        if self.unchanged:
            return f"No changes since last backup ({self.file_name}){pending}"
        if not self.committed:
            return f"Backup {self.file_name} ({_human_size(self.size_bytes)}) already committed{pending}"
        parts = [f"Backup successful: {self.file_name} ({_human_size(self.size_bytes)})"]
        if self.commit_hash:
            parts.append(f"commit {self.commit_hash}")
        if self.pruned:
            parts.append(f"pruned {len(self.pruned)}")
        return ", ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "size_bytes": self.size_bytes,
            "backup_type": self.backup_type,
            "commit_hash": self.commit_hash,
            "committed": self.committed,
            "pushed": self.pushed,
            "unchanged": self.unchanged,
            "pruned": list(self.pruned),
        }


@dataclass
class BackupJob:
    """Exports the database and commits the compressed dump to a git repository.

    Blocking; call it from a worker thread when on an event loop.
    """

    repo_dir: Path
    staging_dir: Path
    subdir: str = "database-backups"
    label: str = "context_memory"
    retention: int = 10
    remote: str = "origin"
    branch: str = "main"

    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "claude_context"
    db_user: str = "context"
    db_password: str = ""

    pg_dump_cmd: str = "pg_dump"
    git_cmd: str = "git"
    timeout: int = 600

    runner: CommandRunner = run_command
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))

    @classmethod
    def from_settings(cls, **overrides: Any) -> "BackupJob":
        values: dict[str, Any] = {
            "repo_dir": Path(settings.backup_repo_dir),
            "staging_dir": Path(settings.backup_staging_dir),
            "subdir": settings.backup_subdir,
            "label": settings.backup_label,
            "retention": settings.backup_retention,
            "remote": settings.git_remote,
            "branch": settings.git_branch,
            "db_host": settings.db_host,
            "db_port": settings.db_port,
            "db_name": settings.db_name,
            "db_user": settings.db_user,
            "db_password": settings.db_password,
            "pg_dump_cmd": settings.pg_dump_cmd,
            "git_cmd": settings.git_cmd,
            "timeout": settings.backup_command_timeout,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def backup_dir(self) -> Path:
        return self.repo_dir / self.subdir

    # =========================================================================
    # Steps
    # =========================================================================

    def run(self, backup_type: str = "data_only", commit_message: str | None = None) -> BackupResult:
        """Export, compare, copy, prune, commit and push."""
        if backup_type not in DUMP_FLAGS:
            raise IntegrationError(f"Unknown backup type: {backup_type}")

        stamp = self.clock().strftime("%Y%m%d%H%M%S")
        dump = self.export(backup_type, stamp)
        size = dump.stat().st_size
        result = BackupResult(file_name=dump.name, size_bytes=size, backup_type=backup_type)

        self._ensure_repository()

        latest = self.latest_backup()
        if latest is not None and filecmp.cmp(dump, latest, shallow=False):
            logger.info("Dump identical to %s; nothing to commit", latest.name)
            dump.unlink(missing_ok=True)
            result.file_name = latest.name
            result.unchanged = True
            self._push_pending(result)
            return result

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = self.backup_dir / dump.name
        shutil.copyfile(dump, target)
        logger.info("Copied %s into %s", dump.name, self.backup_dir)
        result.pruned = self.prune()
        self._prune_staging()

        self._git_checked("add", "-A", "--", self.subdir)
        code, _, stderr = self._git("diff", "--cached", "--quiet", "--", self.subdir)
        if code == 0:
            logger.info("No staged changes after copying %s", dump.name)
            self._push_pending(result)
            return result
        if code != 1:
            raise IntegrationError(f"git diff failed: {_first_line(stderr)}")

        message = self._commit_message(commit_message, backup_type, dump.name, size, stamp)
        code, _, stderr = self._git("commit", "-q", "-m", message, "--", self.subdir)
        if code != 0:
            self._restore(target)
            raise IntegrationError(f"git commit failed: {_first_line(stderr)}")
        result.committed = True
        result.commit_hash = self._git_checked("rev-parse", "--short", "HEAD").strip()
        logger.info("Committed backup %s as %s", dump.name, result.commit_hash)

        self._push(result)
        return result

    def export(self, backup_type: str, stamp: str) -> Path:
        """pg_dump into the staging directory and gzip with a fixed header."""
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        sql_path = self.staging_dir / f"{self.label}_{backup_type}_{stamp}.sql"
        gz_path = sql_path.with_name(sql_path.name + ".gz")

        cmd = [
            self.pg_dump_cmd,
            "-h",
            self.db_host,
            "-p",
            str(self.db_port),
            "-U",
            self.db_user,
            "-d",
            self.db_name,
            "--no-owner",
            "--no-privileges",
            "-f",
            str(sql_path),
            *DUMP_FLAGS[backup_type],
        ]
        env = {**os.environ, "PGPASSWORD": self.db_password}
        logger.info("Exporting %s (%s)", self.db_name, backup_type)
        code, _, stderr = self.runner(cmd, cwd=self.staging_dir, timeout=self.timeout, env=env)
        if code != 0 or not sql_path.exists():
            sql_path.unlink(missing_ok=True)
            logger.error("pg_dump failed: %s", _first_line(stderr))
            raise IntegrationError(f"pg_dump failed: {_first_line(stderr)}")

        try:
            with (
                sql_path.open("rb") as src,
                gz_path.open("wb") as raw,
                gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz,
            ):
                shutil.copyfileobj(src, gz)
        except OSError as exc:
            gz_path.unlink(missing_ok=True)
            raise IntegrationError(f"Compressing {sql_path.name} failed: {exc}") from exc
        finally:
            sql_path.unlink(missing_ok=True)

        logger.info("Exported %s (%s)", gz_path.name, _human_size(gz_path.stat().st_size))
        return gz_path

    def _backups(self, directory: Path) -> list[Path]:
        """Newest first."""
        if not directory.is_dir():
            return []
        files = directory.glob(f"{self.label}_*.sql.gz")
        return sorted(files, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)

    def latest_backup(self) -> Path | None:
        backups = self._backups(self.backup_dir)
        return backups[0] if backups else None

    def prune(self) -> list[str]:
        """Keep only the ``retention`` newest dumps in the repository directory."""
        removed: list[str] = []
        for stale in self._backups(self.backup_dir)[self.retention :]:
            stale.unlink()
            removed.append(stale.name)
        if removed:
            logger.info("Pruned %d old backup(s)", len(removed))
        return removed

    def _prune_staging(self) -> None:
        for stale in self._backups(self.staging_dir)[self.retention :]:
            stale.unlink(missing_ok=True)

    # =========================================================================
    # Git helpers
    # =========================================================================

    def _git(self, *args: str) -> tuple[int, str, str]:
        return self.runner([self.git_cmd, *args], cwd=self.repo_dir, timeout=self.timeout)

    def _git_checked(self, *args: str) -> str:
        code, stdout, stderr = self._git(*args)
        if code != 0:
            raise IntegrationError(f"git {args[0]} failed: {_first_line(stderr)}")
        return stdout

    def _ensure_repository(self) -> None:
        code, stdout, stderr = self._git("rev-parse", "--is-inside-work-tree")
        if code != 0 or stdout.strip() != "true":
            raise IntegrationError(f"{self.repo_dir} is not a git work tree: {_first_line(stderr)}")

    def _push(self, result: BackupResult) -> None:
        code, _, stderr = self._git("push", self.remote, self.branch)
        if code != 0:
            logger.error("Push of %s to %s/%s failed", result.commit_hash, self.remote, self.branch)
            raise IntegrationError(
                f"git push failed (local commit {result.commit_hash} kept): {_first_line(stderr)}"
            )
        result.pushed = True
        logger.info("Pushed %s to %s/%s", result.commit_hash, self.remote, self.branch)

    def _has_unpushed(self) -> bool:
        """True when HEAD holds commits the remote branch lacks, or the remote branch is unknown."""
        code, stdout, _ = self._git("rev-list", "--count", f"{self.remote}/{self.branch}..HEAD")
        if code != 0:
            return True
        return stdout.strip() not in ("", "0")

    def _push_pending(self, result: BackupResult) -> None:
        """Push a backup commit left behind by an earlier run whose push failed."""
        if not self._has_unpushed():
            return
        result.commit_hash = self._git_checked("rev-parse", "--short", "HEAD").strip()
        logger.info("HEAD %s is ahead of %s/%s; pushing", result.commit_hash, self.remote, self.branch)
        self._push(result)

    def _restore(self, new_file: Path) -> None:
        """Undo the copy and the prune after a failed commit."""
        self._git("reset", "-q", "HEAD", "--", self.subdir)
        self._git("checkout", "--", self.subdir)
        new_file.unlink(missing_ok=True)
        logger.warning("Restored %s after failed commit", self.backup_dir)

    def _commit_message(
        self, message: str | None, backup_type: str, file_name: str, size: int, stamp: str
    ) -> str:
        headline = message or f"Auto backup: {stamp[:4]}-{stamp[4:6]}-{stamp[6:8]} {stamp[8:10]}:{stamp[10:12]}"
        return (
            f"{headline}\n\n"
            f"Backup type: {backup_type}\n"
            f"File: {file_name}\n"
            f"Size: {_human_size(size)}"
        )
