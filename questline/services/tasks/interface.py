from __future__ import annotations

from typing import Protocol


class TaskEnqueuer(Protocol):
  """Publishes worker callbacks to a push broker.

  Implementations must raise `BrokerPublishError` when the broker does not acknowledge the message.
  A publish the broker drops as a duplicate of `dedup_key` counts as acknowledged.
  """

  async def publish(self, job_id: str, *, dedup_key: str, delay_seconds: int = 0) -> None:
    """Ask the broker to call the worker endpoint for `job_id`."""
    ...
