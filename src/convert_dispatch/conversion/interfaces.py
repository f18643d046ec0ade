from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

# Async chunk reader, e.g. UploadFile.read; returns b"" at end of stream.
ChunkReader = Callable[[int], Awaitable[bytes]]


@dataclass(frozen=True)
class JobPaths:
    upload_dir: Path
    output_dir: Path
    input_path: Path


@dataclass(frozen=True)
class ConversionResult:
    content: bytes
    content_type: str | None = None


class ConversionBackend(Protocol):
    def convert(
        self,
        input_path: Path,
        target_format: str,
        *,
        engine_id: str,
        options: dict[str, Any] | None = None,
    ) -> ConversionResult:
        """Send the file to the conversion service and return the converted bytes.

        This is a blocking call; callers offload it to a thread. Raises
        BackendError on network failure, timeout or a non-success reply.
        """

    def health(self) -> bool:
        ...


class StorageGateway(Protocol):
    def paths_for(self, owner: str, job_id: str, filename: str) -> JobPaths:
        ...

    async def save_upload(self, paths: JobPaths, reader: ChunkReader, *, max_bytes: int) -> int:
        ...

    def write_output(self, paths: JobPaths, filename: str, content: bytes) -> Path:
        ...

    def remove_job_files(self, owner: str, job_id: str) -> int:
        """Delete upload and output files of a job; returns bytes freed."""
