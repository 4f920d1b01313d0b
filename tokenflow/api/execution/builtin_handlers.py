# Builtin Handlers for TokenFlow Engine
# Collection iteration and accumulation handlers available to every process

import logging

from tokenflow.core.errors import ParamTypeError
from tokenflow.core.process import NO_VALUE

from .handler_context import HandlerContext

logger = logging.getLogger(__name__)

ITERATE_HANDLER = "Iterate"
ACCUMULATE_HANDLER = "Accumulate"


def iterate(context: HandlerContext) -> bool:
    """
    Walk a collection one element per visit.

    Ports:
        entry ``In(Collection)``: start a new iteration
        entry ``Continue``: fetch the next element
        exit ``Loop(Element)``: an element is available
        exit ``Out``: the collection is exhausted

    The remaining elements are kept in the step-scoped ``Cursor``
    parameter. Entering through ``Continue`` without a stored cursor raises
    ProtocolError.
    """
    if context.entry_port == "Continue":
        remaining = list(context.require_step_param("Cursor"))
    else:
        collection = context.get_param("Collection")
        if collection is NO_VALUE or collection is None:
            collection = []
        if not isinstance(collection, (list, tuple)):
            raise ParamTypeError(
                message=f"Collection of {context.step_name} must be a list, "
                f"got {type(collection).__name__}"
            )
        remaining = list(collection)

    if not remaining:
        context.remove_step_param("Cursor")
        context.choose_exit_port("Out")
        logger.debug(f"Iteration at {context.step_name} finished")
        return True

    context.set_step_param("Cursor", remaining[1:])
    context.choose_exit_port("Loop")
    context.set_result("Element", remaining[0])
    return True


def accumulate(context: HandlerContext) -> bool:
    """
    Add the entry ``Element`` to the step-scoped ``Total`` and publish it as
    ``Total`` on the exit port.
    """
    total = context.get_step_param("Total")
    if total is NO_VALUE or total is None:
        total = 0
    element = context.get_param("Element")
    if element is not NO_VALUE and element is not None:
        total = total + element
    context.set_step_param("Total", total)
    context.set_result("Total", total)
    return True


def register_builtin_handlers(registry) -> None:
    """Register the builtin handlers with a HandlerRegistry."""
    registry.register_handler(
        ITERATE_HANDLER, iterate, "Iterates over the Collection parameter"
    )
    registry.register_handler(
        ACCUMULATE_HANDLER, accumulate, "Sums incoming elements into Total"
    )
