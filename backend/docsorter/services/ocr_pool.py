import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

import pytesseract
from PIL import Image

logger = logging.getLogger(__name__)


def run_tesseract(image: Union[Image.Image, str, Path], config: str = "--psm 6") -> dict:
    """Word-level OCR. Returns pytesseract's image_to_data dict."""
    if isinstance(image, (str, Path)):
        with Image.open(image) as img:
            img.load()
            return pytesseract.image_to_data(img, config=config, output_type=pytesseract.Output.DICT)
    return pytesseract.image_to_data(image, config=config, output_type=pytesseract.Output.DICT)


class OCRWorkerPool:
    """
    Fixed set of long-lived OCR workers fed from a bounded queue.

    submit() blocks while the queue is full and resolves once a worker has
    finished the job. Tesseract runs in a thread so the event loop stays free.
    """

    def __init__(self, max_workers: int = 2, config: str = "--psm 6",
                 ocr_func: Optional[Callable[[Any, str], dict]] = None):
        self._max_workers = max(1, max_workers)
        self._config = config
        self._ocr_func = ocr_func or run_tesseract
        self._queue: Optional[asyncio.Queue] = None
        self._running = False
        self._worker_tasks: List[asyncio.Task] = []
        self.jobs_completed = 0
        self.jobs_failed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the OCR workers."""
        if self._running:
            return

        self._running = True
        self._queue = asyncio.Queue(maxsize=self._max_workers)
        self._worker_tasks = [
            asyncio.create_task(self._worker_loop())
            for _ in range(self._max_workers)
        ]
        logger.info(f"OCR pool started with {self._max_workers} workers")

    async def stop(self) -> None:
        """Stop the OCR workers. Jobs still queued are cancelled."""
        if not self._running:
            return

        self._running = False
        for task in self._worker_tasks:
            task.cancel()
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        while self._queue is not None and not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
        logger.info("OCR pool workers stopped")

    async def submit(self, image: Any) -> dict:
        """Queue an image and wait for its OCR data."""
        if not self._running:
            await self.start()

        future = asyncio.get_running_loop().create_future()
        await self._queue.put((image, future))
        return await future

    async def _worker_loop(self) -> None:
        worker_id = id(asyncio.current_task())
        logger.debug(f"OCR worker {worker_id} started")
        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            image, future = job
            try:
                if future.cancelled():
                    continue
                try:
                    data = await asyncio.to_thread(self._ocr_func, image, self._config)
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    self.jobs_failed += 1
                    logger.error(f"OCR job failed: {e}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    self.jobs_completed += 1
                    if not future.done():
                        future.set_result(data)
            finally:
                self._queue.task_done()
