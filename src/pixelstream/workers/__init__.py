"""Background workers for the batch generation engine."""

from pixelstream.workers.batch_worker import process_batch, run_batch_worker
from pixelstream.workers.item_processor import ItemProcessor

__all__ = [
    "ItemProcessor",
    "process_batch",
    "run_batch_worker",
]
