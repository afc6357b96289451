"""Analysis pipeline - repository reader, chunker and model client combined.

Reads the repository, chunks README and diffs, fans the chunk calls out to
a bounded worker pool and reduces the results into an AnalysisReport.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .chunker import ChunkError, TextChunk, chunk_diff, chunk_text
from .config import RunConfig
from .model import ModelError, PromptPayload, SummaryClient, SummaryResult
from .prompts import Task, commit_prompt, project_prompt
from .repository import (
    CommitRecord,
    GitRepository,
    ProjectMeta,
    RepositoryError,
)

logger = logging.getLogger(__name__)

PROJECT_REF = "project"
LOG_REF = "log"
POLL_INTERVAL = 0.2  # seconds between cancellation checks

ProgressCallback = Callable[[str, int, int], None]


class Stage(str, Enum):
    INIT = "init"
    READING_REPO = "reading_repo"
    CHUNKING = "chunking"
    SUMMARIZING = "summarizing"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FailureRecord:
    """A subject that could not be explained.

    ``kind`` is an ErrorKind value for model failures, ``"repository"`` or
    ``"chunking"`` for local ones.
    """

    subject_ref: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"subject_ref": self.subject_ref, "kind": self.kind, "message": self.message}


@dataclass
class AnalysisReport:
    """Complete pipeline output."""

    project: ProjectMeta
    commits: list[CommitRecord] = field(default_factory=list)
    project_summary: SummaryResult | None = None
    commit_summaries: list[SummaryResult] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)
    cancelled: bool = False
    stage: Stage = Stage.INIT
    elapsed_seconds: float = 0.0

    def commit(self, commit_id: str) -> CommitRecord | None:
        return next((c for c in self.commits if c.id == commit_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {
                "name": self.project.name,
                "remote_url": self.project.remote_url,
                "default_branch": self.project.default_branch,
            },
            "project_summary": self.project_summary.to_dict() if self.project_summary else None,
            "commits": [
                {
                    "id": c.id,
                    "short_id": c.short_id,
                    "author": c.author,
                    "timestamp": c.timestamp,
                    "message": c.message,
                }
                for c in self.commits
            ],
            "commit_summaries": [s.to_dict() for s in self.commit_summaries],
            "failures": [f.to_dict() for f in self.failures],
            "cancelled": self.cancelled,
            "stage": self.stage.value,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
        }


@dataclass
class _Job:
    """One subject (the project or a commit) and its chunk payloads."""

    subject_ref: str
    payloads: list[PromptPayload]
    truncated: bool = False
    results: dict[int, str] = field(default_factory=dict)
    error: FailureRecord | None = None


class AnalysisOrchestrator:
    """Runs the whole explanation pipeline for one repository."""

    def __init__(
        self,
        config: RunConfig,
        client: SummaryClient | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        self.config = config
        self._owns_client = client is None
        self.client = client or SummaryClient.from_config(config)
        self.progress_callback = progress_callback
        self.stage = Stage.INIT

    def close(self) -> None:
        """Close the model client if this orchestrator created it."""
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "AnalysisOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def run(
        self,
        repo_path: str | Path,
        cancel_event: threading.Event | None = None,
    ) -> AnalysisReport:
        """Analyze ``repo_path``.

        Raises RepositoryError if the repository cannot be opened. Every later
        failure is recorded in the report instead. Setting ``cancel_event``, or
        a KeyboardInterrupt, at any stage ends the run with a partial report
        flagged ``cancelled``.
        """
        start = time.time()
        cancel_event = cancel_event or threading.Event()
        report = AnalysisReport(project=ProjectMeta(name=Path(repo_path).expanduser().resolve().name))
        jobs: list[_Job] = []

        try:
            self._plan(repo_path, report, jobs, cancel_event)
        except KeyboardInterrupt:
            report.cancelled = True

        if report.cancelled:
            logger.warning("Run cancelled while reading the repository")
        else:
            self._set_stage(Stage.SUMMARIZING)
            report.cancelled = self._summarize(jobs, cancel_event)

        self._set_stage(Stage.AGGREGATING)
        self._aggregate(jobs, report)

        self._set_stage(Stage.DONE)
        report.stage = self.stage
        report.elapsed_seconds = time.time() - start
        return report

    def _plan(
        self,
        repo_path: str | Path,
        report: AnalysisReport,
        jobs: list[_Job],
        cancel_event: threading.Event,
    ) -> None:
        """Read the repository, appending each subject's job to ``jobs`` as it is chunked."""
        self._set_stage(Stage.READING_REPO)
        try:
            repo = GitRepository.open(repo_path)
        except RepositoryError:
            self._set_stage(Stage.FAILED)
            raise

        with repo:
            report.project = meta = repo.project_meta
            if cancel_event.is_set():
                report.cancelled = True
                return
            try:
                report.commits = repo.commit_log(self.config.num_commits)
            except RepositoryError as e:
                logger.warning("Could not read commit log: %s", e)
                report.failures.append(FailureRecord(LOG_REF, "repository", str(e)))
            logger.info("Explaining %d commit(s) of %s", len(report.commits), meta.name)

            self._set_stage(Stage.CHUNKING)
            project_job = self._project_job(meta, report)
            if project_job is not None:
                jobs.append(project_job)
            for commit in report.commits:
                if cancel_event.is_set():
                    report.cancelled = True
                    return
                job = self._commit_job(repo, commit, report)
                if job is not None:
                    jobs.append(job)

    def _project_job(self, meta: ProjectMeta, report: AnalysisReport) -> _Job | None:
        try:
            chunks = chunk_text(meta.readme_text or "", PROJECT_REF, self.config.chunk_char_budget)
        except ChunkError as e:
            report.failures.append(FailureRecord(PROJECT_REF, "chunking", str(e)))
            return None

        chunks, truncated = self._fan_in(chunks)
        total = len(chunks)
        payloads = [
            PromptPayload(Task.PROJECT_DESCRIPTION, PROJECT_REF, project_prompt(meta, c.content, i + 1, total))
            for i, c in enumerate(chunks)
        ] or [PromptPayload(Task.PROJECT_DESCRIPTION, PROJECT_REF, project_prompt(meta))]
        return _Job(PROJECT_REF, payloads, truncated)

    def _commit_job(self, repo: GitRepository, commit: CommitRecord, report: AnalysisReport) -> _Job | None:
        try:
            diff = repo.diff_for(commit.id)
        except RepositoryError as e:
            logger.warning("Could not read diff for %s: %s", commit.short_id, e)
            report.failures.append(FailureRecord(commit.id, "repository", str(e)))
            return None

        try:
            chunks, binary_paths = chunk_diff(diff, self.config.chunk_char_budget)
        except ChunkError as e:
            report.failures.append(FailureRecord(commit.id, "chunking", str(e)))
            return None

        chunks, truncated = self._fan_in(chunks)
        total = len(chunks)
        payloads = [
            PromptPayload(
                Task.COMMIT_EXPLANATION,
                commit.id,
                commit_prompt(commit, c.content, i + 1, total, binary_paths),
            )
            for i, c in enumerate(chunks)
        ] or [PromptPayload(Task.COMMIT_EXPLANATION, commit.id, commit_prompt(commit, binary_paths=binary_paths))]
        logger.debug("Commit %s: %d chunk(s)%s", commit.short_id, total, " (truncated)" if truncated else "")
        return _Job(commit.id, payloads, truncated)

    def _fan_in(self, chunks: list[TextChunk]) -> tuple[list[TextChunk], bool]:
        """Keep at most fan_in_limit chunks; flag the subject if any were dropped."""
        limit = self.config.fan_in_limit
        if len(chunks) > limit:
            return chunks[:limit], True
        return chunks, False

    def _summarize(self, jobs: list[_Job], cancel_event: threading.Event) -> bool:
        """Run every chunk call on the worker pool. Returns True if cancelled."""
        total = sum(len(j.payloads) for j in jobs)
        done_count = 0
        cancelled = False

        executor = ThreadPoolExecutor(
            max_workers=self.config.worker_pool_size,
            thread_name_prefix="wtf-summary",
        )
        pending: dict[Future, tuple[_Job, int]] = {}
        try:
            for job in jobs:
                for index, payload in enumerate(job.payloads):
                    future = executor.submit(self.client.summarize, payload)
                    pending[future] = (job, index)

            while pending:
                if cancel_event.is_set():
                    cancelled = True
                    break
                done, _ = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    job, index = pending.pop(future)
                    self._collect(job, index, future)
                    done_count += 1
                    if self.progress_callback:
                        self.progress_callback(f"Explained {job.subject_ref[:12]}", done_count, total)
        except KeyboardInterrupt:
            cancelled = True
        finally:
            if cancelled:
                # Calls that finished since the last wait() still count
                for future in [f for f in pending if f.done() and not f.cancelled()]:
                    job, index = pending.pop(future)
                    self._collect(job, index, future)
            # Abandon in-flight calls on cancel
            executor.shutdown(wait=not cancelled, cancel_futures=cancelled)

        if cancelled:
            logger.warning("Run cancelled with %d of %d call(s) unfinished", len(pending), total)
        return cancelled

    def _collect(self, job: _Job, index: int, future: Future) -> None:
        try:
            result = future.result()
        except ModelError as e:
            logger.warning("%s failed (%s after %d attempt(s)): %s", job.subject_ref[:12], e.kind.value, e.attempts, e)
            failure = FailureRecord(job.subject_ref, e.kind.value, str(e))
        except Exception as e:
            logger.exception("Unexpected error explaining %s", job.subject_ref[:12])
            failure = FailureRecord(job.subject_ref, "internal", str(e))
        else:
            job.results[index] = result.text
            return
        # First failing chunk stands for the whole subject
        if job.error is None:
            job.error = failure

    def _aggregate(self, jobs: list[_Job], report: AnalysisReport) -> None:
        by_ref = {job.subject_ref: job for job in jobs}

        project = by_ref.get(PROJECT_REF)
        if project is not None:
            report.project_summary = self._reduce(project, report)

        # Report order is commit-log order, never completion order
        for commit in report.commits:
            job = by_ref.get(commit.id)
            if job is None:
                continue
            summary = self._reduce(job, report)
            if summary is not None:
                report.commit_summaries.append(summary)

        order = {PROJECT_REF: 0, LOG_REF: 1, **{c.id: i + 2 for i, c in enumerate(report.commits)}}
        report.failures.sort(key=lambda f: order.get(f.subject_ref, len(order)))

    def _reduce(self, job: _Job, report: AnalysisReport) -> SummaryResult | None:
        """Concatenate chunk summaries in chunk order, skipping duplicates."""
        if job.error is not None:
            report.failures.append(job.error)
            return None
        if len(job.results) < len(job.payloads):
            # Unfinished because the run was cancelled
            return None

        texts: list[str] = []
        seen: set[str] = set()
        for index in range(len(job.payloads)):
            text = job.results[index].strip()
            if text and text not in seen:
                seen.add(text)
                texts.append(text)
        return SummaryResult(job.subject_ref, "\n\n".join(texts), job.truncated)

    def _set_stage(self, stage: Stage) -> None:
        logger.debug("Stage: %s -> %s", self.stage.value, stage.value)
        self.stage = stage
