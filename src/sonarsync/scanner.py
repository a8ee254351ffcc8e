"""sonar-scanner runtime: download, configure and run the scan tool."""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
import subprocess
import tempfile
import threading
import time
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import requests

from .config import ScannerConfig
from .errors import ScannerError
from .models import ScanOutcome

logger = logging.getLogger(__name__)

REQUIRED_PROPERTIES = ("sonar.projectKey", "sonar.sources", "sonar.host.url")

_TASK_ID_PATTERN = re.compile(r"api/ce/task\?id=([\w-]+)")
_ERROR_LINE_PATTERN = re.compile(r"^(?:ERROR:|\[ERROR\]|ERROR\s)\s*(.+)$")

_install_lock = threading.Lock()


class SonarScanner:
    """One sonar-scanner invocation.

    Installations are cached on disk per version and shared between instances;
    properties and the temporary working directory belong to one instance, so
    concurrent scans must each use their own ``SonarScanner``.
    """

    def __init__(self, config: ScannerConfig, work_dir: Optional[str] = None) -> None:
        self._config = config
        self.work_dir = work_dir or config.work_dir
        self.properties: Dict[str, str] = dict(config.properties)
        self._token: Optional[str] = None
        self._scanner_path: Optional[Path] = None
        self._temp_dir: Optional[str] = None

    @property
    def install_root(self) -> Path:
        return Path(self._config.temp_dir).parent / "installations"

    def _install_dir(self, version: str) -> Path:
        return self.install_root / f"sonar-scanner-{version}"

    def _binary_in(self, install_dir: Path) -> Optional[Path]:
        for candidate in install_dir.glob("**/bin/sonar-scanner"):
            if candidate.is_file():
                return candidate
        return None

    def ensure_installed(self, url: Optional[str] = None, version: Optional[str] = None) -> Path:
        """Download and unpack sonar-scanner ``version`` unless already cached.

        Returns:
            Path of the ``sonar-scanner`` executable.

        Raises:
            ScannerError: If the download or extraction fails.
        """
        url = url or self._config.scanner_url
        version = version or self._config.scanner_version
        install_dir = self._install_dir(version)

        with _install_lock:
            binary = self._binary_in(install_dir) if install_dir.exists() else None
            if binary is not None:
                self._scanner_path = binary
                return binary

            logger.info("Downloading sonar-scanner", extra={"version": version, "url": url})
            install_dir.mkdir(parents=True, exist_ok=True)
            archive = install_dir / "sonar-scanner.zip"
            try:
                with requests.get(url, stream=True, timeout=300) as response:
                    response.raise_for_status()
                    with archive.open("wb") as handle:
                        for chunk in response.iter_content(chunk_size=1 << 20):
                            handle.write(chunk)
                with zipfile.ZipFile(archive) as bundle:
                    bundle.extractall(install_dir)
            except (requests.RequestException, zipfile.BadZipFile, OSError) as exc:
                shutil.rmtree(install_dir, ignore_errors=True)
                raise ScannerError(f"failed to download sonar-scanner {version}: {exc}") from exc
            finally:
                if archive.exists():
                    archive.unlink()

            binary = self._binary_in(install_dir)
            if binary is None:
                raise ScannerError(f"sonar-scanner {version} archive does not contain bin/sonar-scanner")
            for executable in binary.parent.parent.glob("**/bin/*"):
                executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            self._scanner_path = binary
            return binary

    def set_property(self, key: str, value: str) -> None:
        self.properties[key] = value

    def set_properties(self, properties: Dict[str, str]) -> None:
        self.properties.update(properties)

    def set_token(self, token: str) -> None:
        """Set the token handed to sonar-scanner in the ``SONAR_TOKEN`` environment variable."""
        self._token = token

    def validate(self) -> None:
        """Check that every required property is set.

        Raises:
            ScannerError: If a required property is missing or blank.
        """
        missing = [key for key in REQUIRED_PROPERTIES if not self.properties.get(key)]
        if missing:
            raise ScannerError(f"scanner configuration is missing required properties: {', '.join(missing)}")

    def initialize(self) -> None:
        """Validate configuration and prepare a private temporary directory."""
        self.validate()
        if self._scanner_path is None or not os.access(self._scanner_path, os.X_OK):
            raise ScannerError("sonar-scanner is not installed; call ensure_installed() first")
        if not Path(self.work_dir).is_dir():
            raise ScannerError(f"scanner work directory does not exist: {self.work_dir}")

        Path(self._config.temp_dir).mkdir(parents=True, exist_ok=True)
        self._temp_dir = tempfile.mkdtemp(prefix="scan-", dir=self._config.temp_dir)
        self.properties.setdefault("sonar.working.directory", self._temp_dir)

    def _parse_output(self, output: str, outcome: ScanOutcome) -> None:
        for line in output.splitlines():
            stripped = line.strip()
            match = _ERROR_LINE_PATTERN.match(stripped)
            if match:
                outcome.errors.append(match.group(1))
            task = _TASK_ID_PATTERN.search(stripped)
            if task:
                outcome.analysis_id = task.group(1)

    def execute(self) -> ScanOutcome:
        """Run sonar-scanner synchronously in :attr:`work_dir`.

        Returns:
            The scan outcome; ``success`` reflects the process exit code.

        Raises:
            ScannerError: If the scanner is not initialized, cannot be started
                or exceeds the configured timeout.
        """
        if self._scanner_path is None or self._temp_dir is None:
            raise ScannerError("scanner is not initialized")

        command: List[str] = [str(self._scanner_path)]
        command.extend(f"-D{key}={value}" for key, value in sorted(self.properties.items()))
        env = dict(os.environ)
        if self._config.java_opts:
            env["SONAR_SCANNER_OPTS"] = self._config.java_opts
        if self._token:
            env["SONAR_TOKEN"] = self._token

        logger.debug(
            "Starting sonar-scanner",
            extra={"work_dir": self.work_dir, "project_key": self.properties.get("sonar.projectKey")},
        )
        started = time.monotonic()
        try:
            result = subprocess.run(
                command,
                cwd=self.work_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=self._config.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ScannerError(f"sonar-scanner timeout after {self._config.timeout_seconds}s") from exc
        except OSError as exc:
            raise ScannerError(f"unable to start sonar-scanner: {exc}") from exc

        outcome = ScanOutcome(success=result.returncode == 0, duration=time.monotonic() - started)
        self._parse_output(f"{result.stdout}\n{result.stderr}", outcome)
        if not outcome.success and not outcome.errors:
            outcome.errors.append(f"sonar-scanner exited with code {result.returncode}")
        return outcome

    def cleanup(self) -> None:
        if self._temp_dir:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None
