from __future__ import annotations

import json
import logging
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Thread

from puter_gateway.stores.base import UsageRecord

MAX_BATCH_RECORDS = 256
DROP_WARNING_EVERY = 1000

logger = logging.getLogger("uvicorn.error")


def usage_line(record: UsageRecord) -> str:
    return json.dumps(record.to_dict(), ensure_ascii=False, separators=(",", ":")) + "\n"


class JsonlUsageLog:
    """Usage sink that appends one JSON line per ``UsageRecord``.

    Records are handed to a writer thread and written in batches, so the
    event loop never touches the file. When the backlog is full a record is
    dropped and counted; the count is reported through the logger.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_pending: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._pending: Queue[UsageRecord | None] = Queue(maxsize=max(1, max_pending))
        self._dropped = 0
        self._writer: Thread | None = None
        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = Thread(
                target=self._write_batches, name="usage-log-writer", daemon=True
            )
            self._writer.start()

    @property
    def dropped_records(self) -> int:
        return self._dropped

    async def append(self, record: UsageRecord) -> None:
        self.write(record)

    def write(self, record: UsageRecord) -> None:
        if self._writer is None:
            return
        try:
            self._pending.put_nowait(record)
        except Full:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % DROP_WARNING_EVERY == 0:
                logger.warning(
                    "usage_log_backlog_full path=%s dropped=%d tenant=%s model=%s",
                    self.path,
                    self._dropped,
                    record.tenant_id,
                    record.model,
                )

    def close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        self._pending.put(None)
        writer.join(timeout=2.0)
        if self._dropped:
            logger.warning(
                "usage_log_closed path=%s dropped=%d", self.path, self._dropped
            )

    def _next_batch(self) -> tuple[list[UsageRecord], bool]:
        first = self._pending.get()
        if first is None:
            return [], True
        batch = [first]
        while len(batch) < MAX_BATCH_RECORDS:
            try:
                record = self._pending.get_nowait()
            except Empty:
                break
            if record is None:
                return batch, True
            batch.append(record)
        return batch, False

    def _write_batches(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                batch, closing = self._next_batch()
                if batch:
                    handle.write("".join(usage_line(record) for record in batch))
                    handle.flush()
                if closing:
                    return
