"""
Test case generation job orchestrator.

Owns the job state machine and runs each job through the pipeline:
1. DocumentIngestor (unless the requirement text is already extracted)
2. PromptComposer → 3. ProviderClient → 4. UsageLedger.record
→ 5. ResponseValidator → 6. persist test cases and complete

Jobs are admitted against the usage ledger, placed on a bounded queue and
processed by a fixed pool of asyncio workers. Every transition is persisted
and published to the notification sink.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .config import PipelineConfig
from .exceptions import (
    DeadlineExceededError,
    InvalidTransitionError,
    JobNotFoundError,
    PipelineError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
)
from .ledger import UsageLedger
from .models import (
    AdmissionResponse,
    CompletionResult,
    ComposedPrompt,
    GeneratedTestCase,
    GenerationJob,
    GenerationRequest,
    JobStatus,
    PromptParameters,
    StatusEvent,
    TokenUsage,
    utcnow,
)
from .nodes import DocumentIngestor, PromptComposer
from .nodes.ingestor import estimate_tokens
from .runtime import ProviderClient
from .stores import ContextProvider, JobRepository, NotificationSink, RequirementStore
from .validation import ResponseValidator

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised inside a worker when a cancellation flag is seen at a checkpoint."""


@dataclass
class JobContext:
    """Worker-side state of one job."""
    job: GenerationJob
    request: GenerationRequest
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    commit_task: Optional[asyncio.Task] = None
    # carried onto the terminal transition, whatever it turns out to be
    fields: Dict[str, Any] = field(default_factory=dict)


class JobOrchestrator:
    """
    Admit, queue, run and finalize generation jobs.

    Usage::

        async with JobOrchestrator(provider, ledger, requirements, context, jobs, notifier) as orch:
            admission = await orch.submit(request)
            await orch.join()
    """

    def __init__(
        self,
        provider: ProviderClient,
        ledger: UsageLedger,
        requirements: RequirementStore,
        context: ContextProvider,
        jobs: JobRepository,
        notifier: NotificationSink,
        config: Optional[PipelineConfig] = None,
        ingestor: Optional[DocumentIngestor] = None,
        composer: Optional[PromptComposer] = None
    ):
        self.provider = provider
        self.ledger = ledger
        self.requirements = requirements
        self.context = context
        self.jobs = jobs
        self.notifier = notifier
        self.config = config or PipelineConfig()
        self.ingestor = ingestor or DocumentIngestor()
        self.composer = composer or PromptComposer(max_prompt_chars=self.config.max_prompt_chars)

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._contexts: Dict[str, JobContext] = {}
        self._workers: List[asyncio.Task] = []
        self._claim_lock = asyncio.Lock()

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._workers:
            return
        for n in range(self.config.workers):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"srs-testgen-worker-{n}"))
        logger.info(f"Started {self.config.workers} workers")

    async def stop(self, drain: bool = True) -> None:
        if drain:
            await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        # jobs nobody will claim now
        while not self._queue.empty():
            job_id = self._queue.get_nowait()
            ctx = self._contexts.pop(job_id, None)
            try:
                if ctx is not None:
                    await self._abandon(ctx)
            finally:
                self._queue.task_done()
        logger.info("Workers stopped")

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    async def __aenter__(self) -> "JobOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop(drain=exc_type is None)

    # ---------- public operations ----------

    async def estimate_cost(self, request: GenerationRequest) -> Decimal:
        """Pre-call cost estimate used for admission."""
        model = request.model or self.config.model
        template = self.composer.template
        prompt_tokens = estimate_tokens(template.system_message) + estimate_tokens(template.user_template)
        text = await self.requirements.get_extracted_text(request.requirement_id)
        if text:
            prompt_tokens += estimate_tokens(text)
        completion_tokens = min(self.config.max_tokens,
                                request.max_test_cases * self.config.estimated_tokens_per_case)
        return self.ledger.cost(model, prompt_tokens, completion_tokens)

    async def submit(self, request: GenerationRequest) -> AdmissionResponse:
        """
        Admit a generation request and queue a job for it.

        Raises:
            QuotaExceededError: The requester is over a monthly ceiling; no job is created
        """
        estimate = await self.estimate_cost(request)
        decision = await self.ledger.check(request.requester_id, request.project_id, estimate)
        if not decision.allowed:
            raise QuotaExceededError(decision)

        job = GenerationJob(
            requirement_id=request.requirement_id,
            project_id=request.project_id,
            test_suite_id=request.test_suite_id,
            requester_id=request.requester_id,
            model=request.model or self.config.model,
        )
        job = await self.jobs.create_job(job)
        self._contexts[job.id] = JobContext(job=job, request=request)
        logger.info(f"Job {job.id} queued for requester {job.requester_id} "
                    f"(estimated cost ${estimate:.4f})")

        await self._queue.put(job.id)
        return AdmissionResponse(job_id=job.id)

    async def cancel(self, job_id: str) -> bool:
        """
        Request cancellation.

        A queued job is cancelled at once. A processing job is cancelled at its
        next checkpoint; once results are being persisted it can no longer be
        cancelled. Returns False when the request can have no effect.
        """
        ctx = self._contexts.get(job_id)
        if ctx is None:
            job = await self.jobs.get_job(job_id)
            if job is None:
                raise JobNotFoundError(f"Unknown job: {job_id}")
            return False

        async with self._claim_lock:
            status = ctx.job.status
            if status == JobStatus.QUEUED:
                await self._transition(ctx, JobStatus.CANCELLED, completed_at=utcnow())
                return True
        if status == JobStatus.PROCESSING and ctx.commit_task is None:
            logger.info(f"Cancellation requested for running job {job_id}")
            ctx.cancel_requested.set()
            return True
        return False

    async def get_job(self, job_id: str) -> GenerationJob:
        job = await self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown job: {job_id}")
        return job

    # ---------- workers ----------

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._run_job(job_id)
            except Exception:
                logger.exception(f"Worker {n} could not finalize job {job_id}")
            finally:
                self._queue.task_done()

    async def _run_job(self, job_id: str) -> None:
        ctx = self._contexts[job_id]
        try:
            async with self._claim_lock:
                if ctx.job.status != JobStatus.QUEUED:
                    logger.info(f"Skipping job {job_id}: already {ctx.job.status.value}")
                    return
                await self._transition(ctx, JobStatus.PROCESSING, started_at=utcnow())

            try:
                async with asyncio.timeout(self.config.job_timeout) as deadline:
                    await self._process(ctx)
            except TimeoutError as e:
                if not deadline.expired():
                    # raised by a collaborator, not the job deadline
                    logger.exception(f"Job {job_id} failed unexpectedly")
                    await self._fail(ctx, e)
                elif ctx.commit_task is not None:
                    # past the point of persisting: let the commit finish
                    await ctx.commit_task
                else:
                    await self._fail(ctx, DeadlineExceededError(
                        f"Job did not finish within {self.config.job_timeout}s"))
            except JobCancelled as e:
                logger.info(f"Job {job_id} cancelled after {e}")
                await self._transition(ctx, JobStatus.CANCELLED, completed_at=utcnow(), **ctx.fields)
            except PipelineError as e:
                await self._fail(ctx, e)
            except Exception as e:
                logger.exception(f"Job {job_id} failed unexpectedly")
                await self._fail(ctx, e)
        except asyncio.CancelledError:
            await self._abandon(ctx)
            raise
        finally:
            self._contexts.pop(job_id, None)

    async def _abandon(self, ctx: JobContext) -> None:
        """Settle a job whose worker is stopped before the job finished."""
        try:
            if ctx.commit_task is not None:
                await ctx.commit_task
            elif not ctx.job.status.is_terminal:
                logger.warning(f"Job {ctx.job.id} cancelled by shutdown while {ctx.job.status.value}")
                await self._transition(ctx, JobStatus.CANCELLED, completed_at=utcnow(), **ctx.fields)
        except Exception:
            logger.exception(f"Could not settle job {ctx.job.id} during shutdown")

    async def _process(self, ctx: JobContext) -> None:
        job = ctx.job
        logger.info(f"Job {job.id}: ingesting requirement {job.requirement_id}")
        text = await self._ingest(job.requirement_id)
        self._checkpoint(ctx, "ingestion")

        logger.info(f"Job {job.id}: composing prompt")
        prompt = await self._compose(ctx, text)
        ctx.fields["prompt_snapshot"] = prompt.snapshot
        self._checkpoint(ctx, "prompt composition")

        logger.info(f"Job {job.id}: calling provider with model {job.model}")
        result = await self._call_provider(ctx, prompt)
        self._checkpoint(ctx, "provider call")

        validation = ResponseValidator(ctx.request.max_test_cases).validate(result.text)
        if validation.rejections:
            logger.warning(f"Job {job.id}: {len(validation.rejections)} candidate test cases rejected")
        self._checkpoint(ctx, "validation")

        ctx.commit_task = asyncio.create_task(self._commit(ctx, validation.test_cases))
        await asyncio.shield(ctx.commit_task)

    @staticmethod
    def _checkpoint(ctx: JobContext, stage: str) -> None:
        if ctx.cancel_requested.is_set():
            raise JobCancelled(stage)

    async def _ingest(self, requirement_id: str) -> str:
        text = await self.requirements.get_extracted_text(requirement_id)
        if text is not None:
            logger.debug(f"Using cached text for requirement {requirement_id}")
            return text

        data, media_type = await self.requirements.get_document(requirement_id)
        document = await asyncio.to_thread(self.ingestor.parse, data, media_type)
        await self.requirements.set_extracted_text(
            requirement_id, document.full_text, document.sections, document.token_estimate
        )
        return document.full_text

    async def _compose(self, ctx: JobContext, text: str) -> ComposedPrompt:
        job, request = ctx.job, ctx.request
        project = await self.context.project_context(job.project_id)
        titles = await self.context.recent_test_case_titles(job.project_id, self.config.recent_titles_limit)
        params = PromptParameters(
            requirement_text=text,
            project_name=project.get("name", ""),
            project_description=project.get("description", ""),
            testing_approach=request.testing_approach,
            max_test_cases=request.max_test_cases,
            include_negative_tests=request.include_negative_tests,
            include_edge_cases=request.include_edge_cases,
            include_boundary_tests=request.include_boundary_tests,
            existing_test_cases=titles,
            custom_prompt=request.custom_prompt,
        )
        return self.composer.compose(params, max_tokens=self.config.max_tokens,
                                     temperature=self.config.temperature)

    async def _call_provider(self, ctx: JobContext, prompt: ComposedPrompt) -> CompletionResult:
        job = ctx.job
        try:
            result = await asyncio.wait_for(
                self.provider.complete(job.model, prompt.messages, prompt.max_tokens,
                                       prompt.temperature, job.requester_id),
                timeout=self.config.provider_timeout,
            )
        except TimeoutError as e:
            raise ProviderTimeoutError(f"Provider call exceeded {self.config.provider_timeout}s") from e
        except ProviderError as e:
            if e.usage is not None:
                await self._record_usage(ctx, e.usage)
            raise

        await self._record_usage(ctx, result.usage)
        return result

    async def _record_usage(self, ctx: JobContext, usage: TokenUsage) -> None:
        job = ctx.job
        record = await self.ledger.record(job.requester_id, job.model, usage,
                                          project_id=job.project_id, job_id=job.id)
        ctx.fields.update(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=record.cost,
        )

    async def _commit(self, ctx: JobContext, test_cases: List[GeneratedTestCase]) -> None:
        await self.jobs.save_generated_test_cases(ctx.job.id, test_cases)
        await self._transition(ctx, JobStatus.COMPLETED, completed_at=utcnow(),
                               generated_count=len(test_cases), **ctx.fields)

    # ---------- transitions ----------

    async def _transition(self, ctx: JobContext, target: JobStatus, **fields) -> None:
        current = ctx.job.status
        if not current.can_transition_to(target):
            raise InvalidTransitionError(ctx.job.id, current.value, target.value)
        ctx.job = await self.jobs.update_job_status(ctx.job.id, target, **fields)
        logger.info(f"Job {ctx.job.id}: {current.value} -> {target.value}")
        await self._notify(ctx.job)

    async def _fail(self, ctx: JobContext, error: Exception) -> None:
        if isinstance(error, PipelineError):
            reason, message = error.reason, error.describe()
        else:
            reason, message = "UnexpectedError", f"UnexpectedError: {error!r}"
        if ctx.job.status.is_terminal:
            logger.warning(f"Job {ctx.job.id} already {ctx.job.status.value}; not recording {reason}")
            return
        logger.error(f"Job {ctx.job.id} failed: {message}")
        await self._transition(ctx, JobStatus.FAILED, completed_at=utcnow(),
                               error_message=message, failure_reason=reason, **ctx.fields)

    async def _notify(self, job: GenerationJob) -> None:
        event = StatusEvent(
            job_id=job.id,
            status=job.status,
            generated_count=job.generated_count if job.status == JobStatus.COMPLETED else None,
            error_message=job.error_message,
        )
        try:
            await self.notifier.publish(job.requester_id, event)
        except Exception:
            logger.exception(f"Could not publish {job.status.value} event for job {job.id}")
