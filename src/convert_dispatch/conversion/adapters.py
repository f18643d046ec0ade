import hashlib
import json
import re
import shutil
from pathlib import Path
from typing import Any

import requests

from ..logging_config import get_logger
from .errors import BackendError, StorageError, UploadTooLargeError
from .interfaces import ChunkReader, ConversionBackend, ConversionResult, JobPaths, StorageGateway

logger = get_logger(name=__name__)

CHUNK = 1024 * 1024

_SEGMENT = re.compile(r"^[A-Za-z0-9@._-]+$")


def is_safe_segment(value: str) -> bool:
    """True if value can be used as one directory name under a storage root."""
    return bool(value) and value not in {".", ".."} and bool(_SEGMENT.fullmatch(value))


def owner_dir_name(owner: str) -> str:
    """Directory name for a caller identity.

    Identities are opaque strings (`auth0|5f1c`, `user:42`, `josé`), so the
    name is a digest of the UTF-8 bytes rather than the identity itself.
    """
    return hashlib.sha256(owner.encode("utf-8")).hexdigest()


def _tree_size(path: Path) -> int:
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


class LocalStorage(StorageGateway):
    """Job files under {root}/{owner_dir_name(owner)}/{job_id}/ for both the upload and output roots."""

    def __init__(self, upload_root: str | Path, output_root: str | Path) -> None:
        self._uploads = Path(upload_root).resolve()
        self._outputs = Path(output_root).resolve()

    def ensure_roots(self) -> None:
        for d in (self._uploads, self._outputs):
            d.mkdir(parents=True, exist_ok=True)

    def _job_dirs(self, owner: str, job_id: str) -> tuple[Path, Path]:
        if not owner:
            raise StorageError("owner is required")
        if not is_safe_segment(job_id):
            raise StorageError(f"unsafe job id: {job_id!r}")
        owner_dir = owner_dir_name(owner)
        return self._uploads / owner_dir / job_id, self._outputs / owner_dir / job_id

    def paths_for(self, owner: str, job_id: str, filename: str) -> JobPaths:
        upload_dir, output_dir = self._job_dirs(owner, job_id)
        # Strip any client-supplied directories.
        name = Path(filename.replace("\\", "/")).name or "upload"
        return JobPaths(upload_dir=upload_dir, output_dir=output_dir, input_path=upload_dir / name)

    async def save_upload(self, paths: JobPaths, reader: ChunkReader, *, max_bytes: int) -> int:
        size_bytes = 0
        try:
            paths.upload_dir.mkdir(parents=True, exist_ok=True)
            with paths.input_path.open("wb") as f_out:
                while True:
                    chunk = await reader(CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > max_bytes:
                        raise UploadTooLargeError(max_bytes)
                    f_out.write(chunk)
        except UploadTooLargeError:
            paths.input_path.unlink(missing_ok=True)
            raise
        except OSError as e:
            raise StorageError(f"Failed to save upload: {e}") from e
        return size_bytes

    def write_output(self, paths: JobPaths, filename: str, content: bytes) -> Path:
        output_path = paths.output_dir / Path(filename).name
        try:
            paths.output_dir.mkdir(parents=True, exist_ok=True)
            with output_path.open("wb") as f:
                f.write(content)
        except OSError as e:
            raise StorageError(f"Failed to write output file: {e}") from e
        return output_path

    def remove_job_files(self, owner: str, job_id: str) -> int:
        freed = 0
        for job_dir in self._job_dirs(owner, job_id):
            if not job_dir.exists():
                continue
            freed += _tree_size(job_dir)
            try:
                shutil.rmtree(job_dir)
            except OSError as e:
                raise StorageError(f"Failed to remove {job_dir}: {e}") from e
            owner_dir = job_dir.parent
            if owner_dir.exists() and not any(owner_dir.iterdir()):
                owner_dir.rmdir()
        return freed


class HttpConversionBackend(ConversionBackend):
    """Client for the conversion service's multipart /api/convert endpoint."""

    def __init__(self, base_url: str, *, timeout: float = 300.0, health_timeout: float = 5.0) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._health_timeout = health_timeout

    @property
    def base_url(self) -> str:
        return self._base

    def convert(
        self,
        input_path: Path,
        target_format: str,
        *,
        engine_id: str,
        options: dict[str, Any] | None = None,
    ) -> ConversionResult:
        data = {"targetFormat": target_format, "engine": engine_id}
        if options:
            data["options"] = json.dumps(options)
        url = f"{self._base}/api/convert"
        try:
            with input_path.open("rb") as f:
                files = {"file": (input_path.name, f, "application/octet-stream")}
                resp = requests.post(url, files=files, data=data, timeout=self._timeout)
        except requests.RequestException as e:
            raise self._request_error(e) from e
        except OSError as e:
            raise StorageError(f"Failed to read input file: {e}") from e

        if not resp.ok:
            text = resp.text.strip()
            logger.warning("Backend returned {} for {}: {}", resp.status_code, input_path.name, text[:200])
            raise BackendError(f"Backend returned {resp.status_code}: {text}", status_code=resp.status_code)
        return ConversionResult(content=resp.content, content_type=resp.headers.get("Content-Type"))

    def _request_error(self, e: requests.RequestException) -> BackendError:
        if isinstance(e, requests.Timeout):
            return BackendError(f"Backend request timed out after {self._timeout:g}s")
        return BackendError(f"Backend request failed: {e}")

    def health(self) -> bool:
        try:
            resp = requests.get(f"{self._base}/api/health", timeout=self._health_timeout)
        except requests.RequestException as e:
            logger.debug("Backend health check failed: {}", e)
            return False
        return resp.ok
