"""Batch file writes into a sandbox.

Each file is written independently through the first write entry point
that accepts it. A file that cannot be written is recorded in the report
and the batch carries on.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from preview_sandbox.errors import describe_error
from preview_sandbox.logging import SandboxLogger, resolve_logger
from preview_sandbox.sandbox.base import (
    FileSpec,
    FileWriteReport,
    FileWriteResult,
    SandboxHandle,
)
from preview_sandbox.sandbox.capabilities import (
    FILE_WRITE_ENTRY_POINTS,
    entry_point_name,
    maybe_await,
    resolve_entry_point,
)
from preview_sandbox.utils.helpers import resolve_positive_int_env

UPLOAD_CONCURRENCY = resolve_positive_int_env("PREVIEW_SANDBOX_UPLOAD_CONCURRENCY", 8)


async def write_file(
    handle: SandboxHandle,
    spec: FileSpec,
    *,
    log: SandboxLogger,
) -> FileWriteResult:
    last_error: Exception | None = None
    for path in FILE_WRITE_ENTRY_POINTS:
        method = resolve_entry_point(handle, path)
        if method is None:
            continue
        try:
            await maybe_await(method(spec.path, spec.content))
        except Exception as error:
            last_error = error
            log.warning(
                "file.entry_point_failed",
                f"{entry_point_name(path)} failed for {spec.path}: {describe_error(error)}",
                path=spec.path,
                entry_point=entry_point_name(path),
            )
            continue
        return FileWriteResult(path=spec.path, success=True)

    error_text = (
        describe_error(last_error)
        if last_error is not None
        else "No valid file write method found on sandbox"
    )
    log.error(
        "file.write_failed",
        f"Failed to write file {spec.path}: {error_text}",
        path=spec.path,
    )
    return FileWriteResult(path=spec.path, success=False, error=error_text)


def collapse_duplicates(specs: list[FileSpec]) -> list[FileSpec]:
    """Keep only the last spec for every path, in first-seen order."""
    latest: dict[str, FileSpec] = {}
    for spec in specs:
        latest[spec.path] = spec
    return list(latest.values())


async def write_files(
    handle: SandboxHandle,
    files: Iterable[FileSpec],
    *,
    sandbox_id: str | None = None,
    logger: SandboxLogger | None = None,
    concurrency: int = UPLOAD_CONCURRENCY,
) -> FileWriteReport:
    log = resolve_logger(logger, "files", sandbox_id=sandbox_id)
    specs = list(files)
    unique = collapse_duplicates(specs)
    bounded = max(1, concurrency)
    log.info(
        "files.batch_start",
        f"[setup] writing {len(unique)} files with concurrency={bounded}",
        total_files=len(specs),
    )

    semaphore = asyncio.Semaphore(bounded)

    async def _write(spec: FileSpec) -> FileWriteResult:
        async with semaphore:
            try:
                return await write_file(handle, spec, log=log)
            except Exception as error:
                return FileWriteResult(
                    path=spec.path,
                    success=False,
                    error=describe_error(error),
                )

    outcomes = await asyncio.gather(*[_write(spec) for spec in unique])
    by_path = {outcome.path: outcome for outcome in outcomes}
    report = FileWriteReport(
        results=tuple(by_path[spec.path] for spec in specs),
        total_files=len(specs),
    )
    if report.success:
        log.info(
            "files.batch_done",
            f"[setup] wrote {report.success_count} files",
            success_count=report.success_count,
        )
    else:
        log.warning(
            "files.batch_partial",
            f"[setup] wrote {report.success_count}/{report.total_files} files, "
            f"{report.error_count} failed",
            success_count=report.success_count,
            error_count=report.error_count,
            failed_paths=[result.path for result in report.failures],
        )
    return report
