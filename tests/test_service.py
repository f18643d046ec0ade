"""
Dispatcher tests: submission, background execution and shutdown.

Async code runs under asyncio.run; the backend is an in-process fake.
"""

import asyncio

import pytest

from convert_dispatch.conversion import (
    BackendError,
    JobStatus,
    NotFoundError,
    UploadTooLargeError,
    ValidationError,
)
from convert_dispatch.conversion.adapters import owner_dir_name
from convert_dispatch.conversion.service import SHUTDOWN_MESSAGE, source_format_of

from conftest import bytes_reader


async def _submit(dispatcher, filename="notes.md", target="pdf", data=b"# hello", **kwargs):
    return await dispatcher.submit("alice", filename, target, reader=bytes_reader(data), **kwargs)


async def _wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("report.PDF", "pdf"),
        ("archive.tar.gz", "gz"),
        ("dir/notes.md", "md"),
        ("README", ""),
        ("trailing.", ""),
        ("", ""),
    ],
)
def test_source_format_of(filename, expected):
    assert source_format_of(filename) == expected


def test_submit_creates_pending_job_and_stores_upload(dispatcher, tmp_path):
    submission = asyncio.run(_submit(dispatcher, options={"toc": True}))

    job = submission.job
    assert job.status is JobStatus.PENDING
    assert job.engine_id == "pandoc"
    assert job.source_format == "md"
    assert job.options == {"toc": True}
    assert submission.paths.upload_dir == (tmp_path / "uploads" / owner_dir_name("alice") / job.id).resolve()
    assert submission.paths.input_path.read_bytes() == b"# hello"
    assert dispatcher.queue.qsize() == 1


def test_submit_without_extension_is_rejected(dispatcher, store):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(_submit(dispatcher, filename="README"))

    assert "cannot determine format" in exc.value.reason
    assert len(store) == 0


def test_submit_unsupported_conversion_returns_suggestions(dispatcher, store):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(_submit(dispatcher, target="docx"))

    assert exc.value.suggestions == ["html", "pdf"]
    assert len(store) == 0


def test_submit_with_unknown_engine(dispatcher):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(_submit(dispatcher, engine="ffmpeg"))

    assert exc.value.reason == "Engine 'ffmpeg' not found"


def test_submit_requires_owner(dispatcher):
    async def go():
        return await dispatcher.submit("", "notes.md", "pdf", reader=bytes_reader(b"x"))

    with pytest.raises(ValidationError):
        asyncio.run(go())


@pytest.mark.parametrize(
    "owner",
    ["auth0|5f1c", "user:42", "Jane Doe", "josé", "a+b@example.com", "../etc", "a/b"],
)
def test_opaque_owner_identities(dispatcher, store, tmp_path, owner):
    async def go():
        submission = await dispatcher.submit(owner, "notes.md", "pdf", reader=bytes_reader(b"x"))
        await dispatcher.execute(submission.job.id)
        return submission

    submission = asyncio.run(go())
    job_id = submission.job.id

    assert store.get(job_id).owner == owner
    assert [j.id for j in dispatcher.list_owned(owner)] == [job_id]
    assert submission.paths.upload_dir.parent.parent == (tmp_path / "uploads").resolve()
    assert dispatcher.result_path(job_id, owner).read_bytes() == b"converted"
    assert dispatcher.delete(job_id, owner) is True
    assert dispatcher.list_owned(owner) == []
    assert list((tmp_path / "uploads").iterdir()) == []
    assert list((tmp_path / "output").iterdir()) == []


def test_upload_too_large_leaves_no_job(dispatcher, store, tmp_path):
    with pytest.raises(UploadTooLargeError):
        asyncio.run(_submit(dispatcher, data=b"x" * 2048))

    assert len(store) == 0
    assert list((tmp_path / "uploads").iterdir()) == []


def test_execute_completes_job(dispatcher, backend):
    async def go():
        submission = await _submit(dispatcher, options={"toc": True})
        return submission, await dispatcher.execute(submission.job.id)

    submission, done = asyncio.run(go())

    assert done.status is JobStatus.COMPLETED
    assert done.output_filename == "notes.pdf"
    assert done.progress == 100
    assert backend.calls[0]["input_bytes"] == b"# hello"
    assert backend.calls[0]["target_format"] == "pdf"
    assert backend.calls[0]["engine_id"] == "pandoc"
    assert backend.calls[0]["options"] == {"toc": True}

    path = dispatcher.result_path(done.id, "alice")
    assert path == submission.paths.output_dir / "notes.pdf"
    assert path.read_bytes() == b"converted"


def test_backend_error_fails_job(dispatcher, backend):
    backend.error = BackendError("Backend returned 502: upstream down", status_code=502)

    async def go():
        submission = await _submit(dispatcher)
        return await dispatcher.execute(submission.job.id)

    failed = asyncio.run(go())

    assert failed.status is JobStatus.FAILED
    assert failed.error_message == "Backend returned 502: upstream down"
    assert failed.output_filename is None
    assert dispatcher.result_path(failed.id, "alice") is None


def test_unexpected_error_fails_job(dispatcher, backend):
    backend.error = RuntimeError("kaboom")

    async def go():
        submission = await _submit(dispatcher)
        return await dispatcher.execute(submission.job.id)

    failed = asyncio.run(go())

    assert failed.status is JobStatus.FAILED
    assert "kaboom" in failed.error_message


def test_execute_runs_each_job_once(dispatcher, backend):
    async def go():
        submission = await _submit(dispatcher)
        await dispatcher.execute(submission.job.id)
        return await dispatcher.execute(submission.job.id)

    second = asyncio.run(go())

    assert second.status is JobStatus.COMPLETED
    assert len(backend.calls) == 1


def test_result_path_requires_owner_and_completion(dispatcher):
    async def go():
        submission = await _submit(dispatcher)
        assert dispatcher.result_path(submission.job.id, "alice") is None
        return await dispatcher.execute(submission.job.id)

    done = asyncio.run(go())

    assert dispatcher.result_path(done.id, "bob") is None
    assert dispatcher.result_path(done.id, "alice") is not None


def test_delete_removes_job_and_files(dispatcher, store):
    async def go():
        submission = await _submit(dispatcher)
        await dispatcher.execute(submission.job.id)
        return submission

    submission = asyncio.run(go())
    job_id = submission.job.id

    assert dispatcher.delete(job_id, "bob") is False
    assert dispatcher.delete(job_id, "alice") is True
    assert store.get(job_id) is None
    assert not submission.paths.upload_dir.exists()
    assert not submission.paths.output_dir.exists()


def test_delete_while_converting_discards_result(dispatcher, backend, store):
    backend.release.clear()

    async def go():
        submission = await _submit(dispatcher)
        task = asyncio.create_task(dispatcher.execute(submission.job.id))
        await _wait_for(backend.entered.is_set)
        assert dispatcher.delete(submission.job.id, "alice") is True
        backend.release.set()
        return submission, await task

    submission, result = asyncio.run(go())

    assert result is None
    assert store.get(submission.job.id) is None
    assert not submission.paths.output_dir.exists()


def test_workers_process_queued_jobs(dispatcher, store):
    async def go():
        await dispatcher.start()
        try:
            ids = [(await _submit(dispatcher, filename=f"n{i}.md")).job.id for i in range(5)]
            await _wait_for(lambda: all(store.get(i).status.terminal for i in ids))
            return ids
        finally:
            await dispatcher.stop()

    ids = asyncio.run(go())

    assert [store.get(i).status for i in ids] == [JobStatus.COMPLETED] * 5
    assert not dispatcher.running


def test_submit_does_not_wait_for_execution(dispatcher, backend, store):
    backend.release.clear()

    async def go():
        await dispatcher.start()
        try:
            submission = await _submit(dispatcher)
            assert submission.job.status is JobStatus.PENDING
            await _wait_for(backend.entered.is_set)
            assert store.get(submission.job.id).status is JobStatus.PROCESSING
            backend.release.set()
            await _wait_for(lambda: store.get(submission.job.id).status.terminal)
        finally:
            backend.release.set()
            await dispatcher.stop()

    asyncio.run(go())


def test_stop_fails_jobs_that_never_ran(dispatcher, store):
    async def go():
        submission = await _submit(dispatcher)
        await dispatcher.stop()
        return submission.job.id

    job_id = asyncio.run(go())

    job = store.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == SHUTDOWN_MESSAGE


def test_require_owned_hides_foreign_jobs(dispatcher):
    submission = asyncio.run(_submit(dispatcher))

    assert dispatcher.require_owned(submission.job.id, "alice").id == submission.job.id
    with pytest.raises(NotFoundError) as exc:
        dispatcher.require_owned(submission.job.id, "bob")
    assert str(exc.value) == f"Job '{submission.job.id}' not found"
