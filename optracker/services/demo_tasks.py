"""
Built-in demo worker used for smoke tests and local development.
"""

import logging

from optracker.errors import StatusCode
from optracker.services.runner import OperationContext, OperationFailure

logger = logging.getLogger(__name__)

DEMO_SLEEP_KIND = "demo.sleep"


async def demo_sleep(ctx: OperationContext) -> dict:
    """Sleep for ``params.seconds`` in ``params.steps`` slices, reporting progress.

    ``params.fail`` makes the operation fail with ``params.error_code``
    (INTERNAL by default) once the sleep is over; ``params.result`` is merged
    into the returned value.
    """
    params = ctx.params
    seconds = float(params.get("seconds", 1.0))
    steps = max(int(params.get("steps", 4)), 1)

    for step in range(steps):
        await ctx.sleep(seconds / steps)
        ctx.update_metadata({"progress": (step + 1) / steps})

    if params.get("fail"):
        raise OperationFailure(
            code=int(params.get("error_code", StatusCode.INTERNAL)),
            message=str(params.get("error_message", "demo failure requested")),
        )

    result = {"slept": seconds}
    result.update(params.get("result") or {})
    logger.debug("Demo operation %s finished", ctx.operation_id)
    return result
