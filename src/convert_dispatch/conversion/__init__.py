"""
Domain layer for conversion job dispatch.
Provides the engine capability table, the resolver, the job store and the
dispatcher that runs jobs against the external conversion backend, so that
front-ends (HTTP or others) share the same core logic.
"""

from .capabilities import CapabilityTable, Engine
from .catalog import build_capability_table, load_engines
from .errors import (
    BackendError,
    DispatchError,
    NotFoundError,
    StorageError,
    UploadTooLargeError,
    ValidationError,
)
from .interfaces import ConversionBackend, ConversionResult, JobPaths, StorageGateway
from .jobs import Job, JobStatus, JobStore
from .resolver import EngineResolver, Invalid, Valid
from .service import Dispatcher, Submission
from .sweeper import RetentionSweeper, SweepReport
