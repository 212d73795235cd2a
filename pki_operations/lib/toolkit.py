"""Easy-RSA toolkit adapter: discovery, provisioning and invocation."""

import os
import shutil
import signal
import stat
import subprocess
import sys
import tarfile
import tempfile
import threading
import urllib.error
import urllib.request
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .config import PKIConfig
from .errors import ToolkitUnavailable
from .logging_config import LOGGER
from .models import ToolkitOutcome


class LocateOutcome(str, Enum):
    FOUND = "found"
    NEEDS_PROVISIONING = "needs_provisioning"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ToolkitHandle:
    """Located toolkit installation."""

    root: Path
    entry_point: Path


@dataclass(frozen=True)
class LocateResult:
    outcome: LocateOutcome
    handle: ToolkitHandle | None = None
    searched: tuple[Path, ...] = ()


def entry_point_name(platform: str = sys.platform) -> str:
    return "easyrsa.bat" if platform == "win32" else "easyrsa"


def default_candidates(platform: str = sys.platform, home: Path | None = None) -> list[Path]:
    """Conventional install locations for the current platform, most specific first."""
    home = home or Path.home()
    if platform == "darwin":
        paths = [
            Path("/usr/local/share/easy-rsa"),
            Path("/opt/homebrew/share/easy-rsa"),
            Path("/usr/local/etc/easy-rsa"),
        ]
    elif platform == "win32":
        paths = [
            Path("C:/Program Files/OpenVPN/easy-rsa"),
            Path("C:/Program Files (x86)/OpenVPN/easy-rsa"),
        ]
    else:
        paths = [
            Path("/usr/share/easy-rsa"),
            Path("/usr/local/share/easy-rsa"),
            Path("/etc/easy-rsa"),
            Path("/usr/local/etc/easy-rsa"),
        ]
    return [*paths, home / "easy-rsa"]


class ToolkitLocator:
    """Finds an Easy-RSA installation, downloading the pinned release as a last resort."""

    def __init__(
        self,
        fallback_dir: Path,
        release_url: str,
        candidates: Sequence[Path] | None = None,
        platform: str = sys.platform,
        download_timeout: float = 60.0,
    ) -> None:
        """Initialize locator.

        Args:
            fallback_dir: Working-directory-relative location, searched last and
                used as the provisioning target
            release_url: Pinned release archive (.tgz) to provision from
            candidates: Ordered install locations (default: platform conventions)
            platform: sys.platform value used for entry point naming
            download_timeout: Seconds allowed for the archive download
        """
        self.fallback_dir = fallback_dir
        self.release_url = release_url
        self.candidates = list(candidates) if candidates is not None else default_candidates(platform)
        self.platform = platform
        self.download_timeout = download_timeout

    @classmethod
    def from_config(cls, config: PKIConfig) -> "ToolkitLocator":
        return cls(
            fallback_dir=config.toolkit_fallback_dir,
            release_url=config.toolkit_release_url,
        )

    def _handle_for(self, directory: Path) -> ToolkitHandle | None:
        entry_point = directory / entry_point_name(self.platform)
        if not entry_point.is_file():
            return None
        if self.platform != "win32" and not os.access(entry_point, os.X_OK):
            LOGGER.info("Found %s but it is not executable", entry_point)
            return None
        return ToolkitHandle(root=directory.resolve(), entry_point=entry_point.resolve())

    def search(self) -> LocateResult:
        """Probe candidate locations in order, then the fallback directory."""
        searched = (*self.candidates, self.fallback_dir)
        for directory in searched:
            if not directory.is_dir():
                continue
            handle = self._handle_for(directory)
            if handle is not None:
                LOGGER.info("Found easyrsa entry point at %s", handle.entry_point)
                return LocateResult(LocateOutcome.FOUND, handle, searched)
            LOGGER.info("Found directory %s but no runnable easyrsa entry point", directory)

        outcome = LocateOutcome.NEEDS_PROVISIONING if self.release_url else LocateOutcome.UNAVAILABLE
        return LocateResult(outcome, None, searched)

    def provision(self) -> None:
        """Download the pinned release and unpack it into the fallback directory.

        Raises:
            ToolkitUnavailable: If download or extraction fails
        """
        LOGGER.info("Downloading Easy-RSA from %s to %s", self.release_url, self.fallback_dir)
        try:
            with tempfile.TemporaryDirectory(prefix="easyrsa-") as tmp:
                archive_path = Path(tmp) / "easyrsa.tgz"
                with urllib.request.urlopen(self.release_url, timeout=self.download_timeout) as response:
                    with archive_path.open("wb") as archive_file:
                        shutil.copyfileobj(response, archive_file)

                extract_dir = Path(tmp) / "extract"
                with tarfile.open(archive_path, "r:gz") as archive:
                    archive.extractall(extract_dir, filter="data")

                # Release archives wrap everything in a single EasyRSA-<version>/ directory
                roots = [p for p in extract_dir.iterdir() if p.is_dir()]
                source = roots[0] if len(roots) == 1 else extract_dir

                self.fallback_dir.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, self.fallback_dir, dirs_exist_ok=True)
        except (urllib.error.URLError, tarfile.TarError, OSError) as e:
            raise ToolkitUnavailable(f"failed to provision Easy-RSA: {e}") from e

        entry_point = self.fallback_dir / entry_point_name(self.platform)
        if not entry_point.is_file():
            raise ToolkitUnavailable(f"provisioned archive has no {entry_point.name}")
        mode = entry_point.stat().st_mode
        entry_point.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        LOGGER.info("Easy-RSA provisioned at %s", self.fallback_dir)

    def locate(self) -> ToolkitHandle:
        """Return the first usable installation, provisioning one if needed.

        Raises:
            ToolkitUnavailable: If nothing is found and provisioning fails
        """
        result = self.search()
        if result.outcome is LocateOutcome.FOUND and result.handle is not None:
            return result.handle
        if result.outcome is LocateOutcome.UNAVAILABLE:
            raise ToolkitUnavailable("Easy-RSA not found and no release URL configured")

        LOGGER.info("Easy-RSA not found in standard locations, provisioning")
        self.provision()

        retry = self.search()
        if retry.outcome is not LocateOutcome.FOUND or retry.handle is None:
            raise ToolkitUnavailable("Easy-RSA still not runnable after provisioning")
        return retry.handle


class Toolkit(Protocol):
    """The cryptographic boundary: one method, one subprocess per call."""

    def run(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        batch: bool = True,
        timeout: float | None = None,
    ) -> ToolkitOutcome: ...


class EasyRSAToolkit:
    """Runs easyrsa subcommands against a fixed PKI directory."""

    def __init__(
        self,
        handle: ToolkitHandle,
        pki_dir: Path,
        default_timeout: float = 120.0,
    ) -> None:
        self.handle = handle
        self.pki_dir = pki_dir
        self.default_timeout = default_timeout

    def run(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        batch: bool = True,
        timeout: float | None = None,
    ) -> ToolkitOutcome:
        """Execute one easyrsa subcommand.

        Args:
            subcommand: easyrsa command, e.g. "build-client-full"
            args: Positional arguments for the command
            batch: Suppress interactive confirmation prompts
            timeout: Seconds before the process is killed (default: default_timeout)

        Returns:
            ToolkitOutcome with exit code and captured output; a non-zero exit
            is returned, not raised
        """
        command = [str(self.handle.entry_point)]
        if batch:
            command.append("--batch")
        command.extend([subcommand, *args])

        env = {**os.environ, "EASYRSA_PKI": str(self.pki_dir.resolve())}
        if batch:
            env["EASYRSA_BATCH"] = "1"

        limit = timeout if timeout is not None else self.default_timeout
        LOGGER.info("Running easyrsa %s %s", subcommand, " ".join(args))
        # openssl runs as a child of the easyrsa script; a timeout kills the whole group
        proc = subprocess.Popen(
            command,
            cwd=self.handle.root,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=limit)
        except subprocess.TimeoutExpired:
            _kill_process_group(proc)
            stdout, stderr = proc.communicate()
            LOGGER.error("easyrsa %s timed out after %.0fs", subcommand, limit)
            return ToolkitOutcome(
                subcommand=subcommand,
                args=tuple(args),
                exit_code=None,
                stdout=stdout or "",
                stderr=stderr or "",
                timed_out=True,
            )

        if stderr:
            LOGGER.debug("easyrsa %s stderr: %s", subcommand, stderr.strip())
        if proc.returncode != 0:
            LOGGER.warning("easyrsa %s exited with %d", subcommand, proc.returncode)

        return ToolkitOutcome(
            subcommand=subcommand,
            args=tuple(args),
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )


def _kill_process_group(proc: subprocess.Popen) -> None:
    if sys.platform == "win32":
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class KeyGenerator(Protocol):
    def generate(self, path: Path) -> ToolkitOutcome: ...


class OpenVPNKeyGenerator:
    """Generates the tls-auth static key with the openvpn binary."""

    def __init__(self, binary: str = "openvpn", timeout: float = 30.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def generate(self, path: Path) -> ToolkitOutcome:
        args = ("--genkey", "secret", str(path))
        try:
            completed = subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            return ToolkitOutcome("genkey", args, None, _as_text(e.stdout), _as_text(e.stderr), True)
        except FileNotFoundError as e:
            return ToolkitOutcome("genkey", args, 127, "", str(e))
        return ToolkitOutcome("genkey", args, completed.returncode, completed.stdout, completed.stderr)


class LazyToolkit:
    """Locates (and if needed provisions) Easy-RSA on the first ``run``.

    Read-only operations never trigger discovery or a download.
    """

    def __init__(self, locator: ToolkitLocator, pki_dir: Path, default_timeout: float = 120.0) -> None:
        self.locator = locator
        self.pki_dir = pki_dir
        self.default_timeout = default_timeout
        self._delegate: EasyRSAToolkit | None = None
        self._lock = threading.Lock()

    def resolve(self) -> EasyRSAToolkit:
        with self._lock:
            if self._delegate is None:
                handle = self.locator.locate()
                self._delegate = EasyRSAToolkit(handle, self.pki_dir, self.default_timeout)
            return self._delegate

    def run(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        batch: bool = True,
        timeout: float | None = None,
    ) -> ToolkitOutcome:
        return self.resolve().run(subcommand, args, batch=batch, timeout=timeout)
