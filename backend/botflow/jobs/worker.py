import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import ValidationError

from botflow.core.config import WorkerConfig
from botflow.jobs.deps import JobDependencies, build_default_dependencies
from botflow.jobs.event_processor import process_event_job
from botflow.jobs.message_processor import process_message_job
from botflow.jobs.pipeline_processor import process_pipeline_step
from botflow.models.jobs import JobKind, QueuedJob, parse_job
from botflow.services.job_queue import JobQueue

logger = logging.getLogger("bot_worker")

JobProcessor = Callable[[Any], Awaitable[Any]]


def build_processors(deps: JobDependencies) -> dict[JobKind, JobProcessor]:
    return {
        JobKind.MESSAGE_TRIGGER: partial(process_message_job, deps=deps),
        JobKind.EVENT_TRIGGER: partial(process_event_job, deps=deps),
        JobKind.PIPELINE_STEP: partial(process_pipeline_step, deps=deps),
    }


class WorkerPool:
    """
    固定并发槽位的 worker 池。

    中文注释:
    - 每个槽位：claim 一个 job -> 按 kind 路由 -> 成功 complete / 失败 fail（由队列决定重试或死信）。
    - 无法识别的 kind / 无法解析的 payload 直接进入死信，不做重试。
    - run_once() 处理完当前所有到期任务（含处理中新 enqueue 的后续任务）后返回，供测试与 cron 使用。
    """

    def __init__(
        self,
        queue: JobQueue,
        processors: Mapping[JobKind, JobProcessor],
        *,
        concurrency: int = 3,
        poll_interval_sec: float = 1.0,
    ):
        self.queue = queue
        self.processors = dict(processors)
        self.concurrency = max(1, int(concurrency))
        self.poll_interval_sec = poll_interval_sec
        self.worker_id = f"worker-{datetime.now().timestamp()}"
        self.running = False
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_dependencies(cls, deps: JobDependencies, config: Optional[WorkerConfig] = None) -> "WorkerPool":
        cfg = config or WorkerConfig.from_env()
        return cls(
            deps.queue,
            build_processors(deps),
            concurrency=cfg.concurrency,
            poll_interval_sec=cfg.poll_interval_sec,
        )

    async def _claim(self, slot: int) -> Optional[QueuedJob]:
        return await asyncio.to_thread(self.queue.claim, f"{self.worker_id}-{slot}")

    async def process(self, queued: QueuedJob) -> bool:
        """处理一个已 claim 的 job；返回是否成功。"""
        try:
            kind = JobKind(queued.kind)
        except ValueError:
            await asyncio.to_thread(self.queue.dead_letter, queued, f"Unknown job kind: {queued.kind}")
            return False

        processor = self.processors.get(kind)
        if processor is None:
            await asyncio.to_thread(self.queue.dead_letter, queued, f"No processor registered for {kind.value}")
            return False

        try:
            job = parse_job(kind, queued.payload)
        except ValidationError as e:
            await asyncio.to_thread(self.queue.dead_letter, queued, f"Invalid payload: {e.error_count()} error(s)")
            return False

        logger.info("Processing job %s kind=%s attempt=%s", queued.id, kind.value, queued.attempts)
        try:
            await processor(job)
        except Exception as e:
            logger.error("Job %s failed: %s", queued.id, e, exc_info=True)
            await asyncio.to_thread(self.queue.fail, queued, str(e) or type(e).__name__)
            return False

        await asyncio.to_thread(self.queue.complete, queued.id)
        return True

    async def run_once(self) -> int:
        """
        处理所有当前到期的任务后返回已处理数量。

        中文注释: 每一轮最多并发 concurrency 个；处理中新 enqueue 的任务会在下一轮被领取。
        """
        handled = 0
        while True:
            batch: list[QueuedJob] = []
            for slot in range(self.concurrency):
                queued = await self._claim(slot)
                if queued is None:
                    break
                batch.append(queued)
            if not batch:
                return handled
            await asyncio.gather(*(self.process(q) for q in batch))
            handled += len(batch)

    async def _slot_loop(self, slot: int) -> None:
        while self.running:
            try:
                queued = await self._claim(slot)
                if queued is None:
                    await asyncio.sleep(self.poll_interval_sec)
                    continue
                await self.process(queued)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker loop error: %s", e)
                await asyncio.sleep(self.poll_interval_sec)

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        logger.info("Bot worker %s started with %s slot(s)", self.worker_id, self.concurrency)
        self._tasks = [asyncio.create_task(self._slot_loop(i)) for i in range(self.concurrency)]

    async def stop(self) -> None:
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Bot worker %s stopped", self.worker_id)


def bootstrap_registry(deps: JobDependencies) -> None:
    """加载插件、同步安装状态、补齐 bot 用户身份（都是尽力而为）。"""
    deps.registry.load_plugins()
    deps.registry.sync_installs()
    deps.registry.ensure_bot_users()


async def main() -> None:
    deps = build_default_dependencies()
    bootstrap_registry(deps)
    pool = WorkerPool.from_dependencies(deps)
    await pool.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await pool.stop()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot worker interrupted")
