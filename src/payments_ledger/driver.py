import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from payments_ledger.decoder import decode_records
from payments_ledger.errors import DecodeError, LedgerError
from payments_ledger.ledger import Ledger
from payments_ledger.message_queue import PartitionedQueue
from payments_ledger.models import ClientAccount, ProcessingStats, Transaction

logger = logging.getLogger(__name__)


@dataclass
class DriverResult:
    accounts: Dict[int, ClientAccount]
    stats: ProcessingStats
    stream_error: Optional[Exception] = None


class StreamDriver:
    """
    Feeds a decoded transaction stream into a Ledger.

    With num_workers > 1 a publisher thread routes records into per-partition
    queues (client_id % num_workers) and one consumer thread drains each
    partition, so a client's records are applied in input order while
    different clients proceed in parallel. The publisher also claims each
    deposit and withdrawal id in input order (Ledger.announce), so when two
    clients reuse an id the earlier record wins, as it would sequentially.
    With num_workers <= 1 records are applied in the calling thread.
    """

    def __init__(self, num_workers: int = 4, skip_malformed: bool = False, ledger: Optional[Ledger] = None):
        self._num_workers = num_workers
        self._skip_malformed = skip_malformed
        self._ledger = ledger or Ledger()
        self._stats = ProcessingStats()
        self._stream_error: Optional[Exception] = None
        self._worker_errors: List[Exception] = []

    def process_file(self, filepath: str) -> DriverResult:
        """
        Process a CSV file and return final account states.
        Raises OSError if the file cannot be opened; later read failures only end the stream.
        """
        with open(filepath, "r", newline="") as f:
            return self.process(decode_records(f, skip_malformed=self._skip_malformed))

    def process(self, records: Iterable[Transaction]) -> DriverResult:
        """Consume the record stream once and return what was committed."""
        if self._num_workers <= 1:
            logger.info("Starting sequential processing")
            self._process_sequential(records)
        else:
            logger.info(f"Starting parallel processing with {self._num_workers} workers")
            self._process_parallel(records)
        logger.info("Processing complete")

        logger.info(
            f"Decoded: {self._stats.decoded}, "
            f"Applied: {self._stats.applied}, "
            f"Rejected: {self._stats.failed}"
        )

        return DriverResult(
            accounts=self._ledger.get_all_accounts(),
            stats=self._stats,
            stream_error=self._stream_error,
        )

    def _process_sequential(self, records: Iterable[Transaction]) -> None:
        for transaction in self._pull(records):
            self._apply(transaction)

    def _process_parallel(self, records: Iterable[Transaction]) -> None:
        queue = PartitionedQueue(self._num_workers)

        publisher_thread = threading.Thread(target=self._publish_transactions, args=(records, queue))
        publisher_thread.start()

        consumer_threads = []
        for partition in range(queue.num_partitions):
            consumer_thread = threading.Thread(target=self._consume_transactions, args=(queue, partition))
            consumer_thread.start()
            consumer_threads.append(consumer_thread)

        publisher_thread.join()
        queue.shutdown()
        for consumer_thread in consumer_threads:
            consumer_thread.join()

        if self._worker_errors:
            raise self._worker_errors[0]

    def _publish_transactions(self, records: Iterable[Transaction], queue: PartitionedQueue) -> None:
        """Pull decoded records and route each to its client's partition."""
        try:
            for transaction in self._pull(records):
                self._ledger.announce(transaction)
                queue.publish_message(transaction)
        except Exception as e:
            self._worker_errors.append(e)

    def _consume_transactions(self, queue: PartitionedQueue, partition: int) -> None:
        """
        Consumer loop: pull from one partition and apply in order.
        After an unexpected error the partition is still drained, releasing each
        record's id claim so that other partitions never wait on it.
        """
        failed = False
        while True:
            transaction = queue.consume_message(partition)
            if transaction is None:
                if queue.is_shutdown() and queue.is_empty(partition):
                    break
                continue

            if failed:
                self._ledger.abandon(transaction)
                continue

            try:
                self._apply(transaction)
            except Exception as e:
                self._worker_errors.append(e)
                self._ledger.abandon(transaction)
                failed = True

    def _pull(self, records: Iterable[Transaction]) -> Iterable[Transaction]:
        """
        Yield records until the stream ends or fails.
        A decode or read failure stops the stream; what was applied so far stands.
        """
        try:
            for transaction in records:
                self._stats.record_decoded()
                yield transaction
        except (DecodeError, UnicodeDecodeError, OSError) as e:
            self._stream_error = e
            logger.warning(f"Stopped reading input after {self._stats.decoded} records: {e}")

    def _apply(self, transaction: Transaction) -> None:
        try:
            self._ledger.apply(transaction)
        except LedgerError as e:
            self._stats.record_failure(e)
            logger.info(f"Rejected {transaction}: {e}")
        else:
            self._stats.record_success()
