# Shared fixtures for TokenFlow tests
# Turtle process documents and a wired engine on in-memory storage

import pytest

from tokenflow.config import EngineSettings
from tokenflow.api.execution.builtin_handlers import register_builtin_handlers
from tokenflow.api.execution.expression_evaluator import ConditionEvaluator
from tokenflow.api.execution.scheduler import ProcessFacade
from tokenflow.api.messaging.handler_registry import HandlerRegistry
from tokenflow.api.storage.base import BaseStorageService
from tokenflow.api.storage.process_repository import ProcessRepository
from tokenflow.api.storage.token_repository import TokenRepository


PREFIXES = """
@prefix flow: <http://example.org/flow#> .
@prefix proc: <http://example.org/process/> .
@prefix rdfs: <http://www.w3.org/2000/01/rdf-schema#> .
"""

# Sums a collection: Start -> Loop (Iterate) <-> Sum (Accumulate) -> End
LOOP_SUM_TTL = PREFIXES + """
proc:LoopSum a flow:Process ;
    flow:model "Demo" ;
    flow:name "LoopSum" ;
    rdfs:comment "Adds up the elements of a collection" ;
    flow:step proc:LoopSum_Start, proc:LoopSum_Loop, proc:LoopSum_Sum, proc:LoopSum_End ;
    flow:dataLink [ flow:from "Sum.Out.Total" ; flow:to "End.In.Total" ] .

proc:LoopSum_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:order 1 ;
    flow:entryPort [ flow:name "In" ; flow:param [ flow:name "Collection" ; flow:type "list" ] ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Collection" ; flow:target "Loop.In" ] .

proc:LoopSum_Loop flow:name "Loop" ;
    flow:kind "activity" ;
    flow:handler "Iterate" ;
    flow:order 2 ;
    flow:entryPort [ flow:name "In" ; flow:param [ flow:name "Collection" ; flow:type "list" ] ] ,
                   [ flow:name "Continue" ; flow:order 1 ] ;
    flow:exitPort [ flow:name "Loop" ; flow:param "Element" ; flow:target "Sum.In" ] ,
                  [ flow:name "Out" ; flow:target "End.In" ] ;
    flow:stepParam [ flow:name "Cursor" ; flow:type "list" ] .

proc:LoopSum_Sum flow:name "Sum" ;
    flow:handler "Accumulate" ;
    flow:order 3 ;
    flow:entryPort [ flow:name "In" ; flow:param "Element" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Total" ; flow:target "Loop.Continue" ] ;
    flow:stepParam "Total" .

proc:LoopSum_End flow:name "End" ;
    flow:kind "end" ;
    flow:order 4 ;
    flow:entryPort [ flow:name "In" ; flow:param "Total" ] .
"""

# Work has an Error port leading to its own end step
GUARDED_TTL = PREFIXES + """
proc:Guarded a flow:Process ;
    flow:model "Demo" ;
    flow:name "Guarded" ;
    flow:step proc:Guarded_Start, proc:Guarded_Work, proc:Guarded_Done, proc:Guarded_Failed .

proc:Guarded_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Value" ; flow:target "Work.In" ] .

proc:Guarded_Work flow:name "Work" ;
    flow:handler "Risky" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Result" ; flow:target "Done.In" ] ,
                  [ flow:name "Error" ; flow:param "Exception" ; flow:target "Failed.In" ] .

proc:Guarded_Done flow:name "Done" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Result" ] .

proc:Guarded_Failed flow:name "Failed" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Exception" ] .
"""

# Same shape without an Error port
UNGUARDED_TTL = PREFIXES + """
proc:Unguarded a flow:Process ;
    flow:model "Demo" ;
    flow:name "Unguarded" ;
    flow:step proc:Unguarded_Start, proc:Unguarded_Work, proc:Unguarded_End .

proc:Unguarded_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Value" ; flow:target "Work.In" ] .

proc:Unguarded_Work flow:name "Work" ;
    flow:handler "Risky" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Result" ; flow:target "End.In" ] .

proc:Unguarded_End flow:name "End" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Result" ] .
"""

# Caller invokes Doubler as a sub-process
SUBPROCESS_TTL = PREFIXES + """
proc:Caller a flow:Process ;
    flow:model "Demo" ;
    flow:name "Caller" ;
    flow:step proc:Caller_Start, proc:Caller_Call, proc:Caller_End .

proc:Caller_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param [ flow:name "X" ; flow:type "int" ] ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "X" ; flow:target "Call.In" ] .

proc:Caller_Call flow:name "Call" ;
    flow:kind "subprocess" ;
    flow:subprocess "Doubler" ;
    flow:entryPort [ flow:name "In" ; flow:param "X" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Y" ; flow:target "End.In" ] .

proc:Caller_End flow:name "End" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Y" ] .

proc:Doubler a flow:Process ;
    flow:model "Demo" ;
    flow:name "Doubler" ;
    flow:step proc:Doubler_Start, proc:Doubler_Double, proc:Doubler_Done .

proc:Doubler_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "X" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "X" ; flow:target "Double.In" ] .

proc:Doubler_Double flow:name "Double" ;
    flow:handler "Double" ;
    flow:entryPort [ flow:name "In" ; flow:param "X" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param [ flow:name "Y" ; flow:type "int" ] ; flow:target "Done.In" ] .

proc:Doubler_Done flow:name "Done" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Y" ] .
"""

# Hold suspends the token; Check routes by amount
APPROVAL_TTL = PREFIXES + """
proc:Approval a flow:Process ;
    flow:model "Demo" ;
    flow:name "Approval" ;
    flow:step proc:Approval_Start, proc:Approval_Hold, proc:Approval_Check,
              proc:Approval_Big, proc:Approval_Small .

proc:Approval_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param [ flow:name "Amount" ; flow:type "int" ; flow:required true ] ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Amount" ; flow:target "Hold.In" ] .

proc:Approval_Hold flow:name "Hold" ;
    flow:kind "wait" ;
    flow:entryPort [ flow:name "In" ; flow:param [ flow:name "Amount" ; flow:type "int" ] ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Amount" ; flow:target "Check.In" ] .

proc:Approval_Check flow:name "Check" ;
    flow:kind "decision" ;
    flow:expression "Amount > 100" ;
    flow:entryPort [ flow:name "In" ; flow:param "Amount" ] ;
    flow:exitPort [ flow:name "Yes" ; flow:param "Amount" ; flow:target "Big.In" ] ,
                  [ flow:name "No" ; flow:param "Amount" ; flow:target "Small.In" ] .

proc:Approval_Big flow:name "Big" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Amount" ] .

proc:Approval_Small flow:name "Small" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Amount" ] .
"""

# Start fans out to A and B which meet again at the Merge join
SPLIT_TTL = PREFIXES + """
proc:Split a flow:Process ;
    flow:model "Demo" ;
    flow:name "Split" ;
    flow:step proc:Split_Start, proc:Split_A, proc:Split_B, proc:Split_Merge, proc:Split_End .

proc:Split_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "N" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "N" ; flow:target "A.In", "B.In" ] .

proc:Split_A flow:name "A" ;
    flow:handler "AddOne" ;
    flow:entryPort [ flow:name "In" ; flow:param "N" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "A" ; flow:target "Merge.In" ] .

proc:Split_B flow:name "B" ;
    flow:handler "TimesTwo" ;
    flow:entryPort [ flow:name "In" ; flow:param "N" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "B" ; flow:target "Merge.In" ] .

proc:Split_Merge flow:name "Merge" ;
    flow:handler "Combine" ;
    flow:join true ;
    flow:entryPort [ flow:name "In" ; flow:param "A", "B" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Sum" ; flow:target "End.In" ] .

proc:Split_End flow:name "End" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Sum" ] .
"""

# Start fans out to A and B which end separately
PARALLEL_TTL = PREFIXES + """
proc:Parallel a flow:Process ;
    flow:model "Demo" ;
    flow:name "Parallel" ;
    flow:step proc:Parallel_Start, proc:Parallel_A, proc:Parallel_B,
              proc:Parallel_EndA, proc:Parallel_EndB .

proc:Parallel_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "N" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "N" ; flow:target "A.In", "B.In" ] .

proc:Parallel_A flow:name "A" ;
    flow:handler "AddOne" ;
    flow:entryPort [ flow:name "In" ; flow:param "N" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "A" ; flow:target "EndA.In" ] .

proc:Parallel_B flow:name "B" ;
    flow:handler "TimesTwo" ;
    flow:entryPort [ flow:name "In" ; flow:param "N" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "B" ; flow:target "EndB.In" ] .

proc:Parallel_EndA flow:name "EndA" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "A" ] .

proc:Parallel_EndB flow:name "EndB" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "B" ] .
"""

# One activity between start and end, for handler-level tests
SINGLE_TTL = PREFIXES + """
proc:Single a flow:Process ;
    flow:model "Demo" ;
    flow:name "Single" ;
    flow:step proc:Single_Start, proc:Single_Work, proc:Single_End .

proc:Single_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Value" ; flow:target "Work.In" ] .

proc:Single_Work flow:name "Work" ;
    flow:handler "Work" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ,
                   [ flow:name "Reply" ; flow:param "Answer" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Result" ; flow:target "End.In" ] ;
    flow:stepParam [ flow:name "Visits" ; flow:type "int" ; flow:default 0 ] .

proc:Single_End flow:name "End" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Result" ] .
"""

# Pause resumes by itself once its timer has run out
TIMED_TTL = PREFIXES + """
proc:Timed a flow:Process ;
    flow:model "Demo" ;
    flow:name "Timed" ;
    flow:step proc:Timed_Start, proc:Timed_Pause, proc:Timed_End .

proc:Timed_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Value" ; flow:target "Pause.In" ] .

proc:Timed_Pause flow:name "Pause" ;
    flow:kind "wait" ;
    flow:timerDelaySeconds 0 ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] ;
    flow:exitPort [ flow:name "Out" ; flow:param "Value" ; flow:target "End.In" ] .

proc:Timed_End flow:name "End" ;
    flow:kind "end" ;
    flow:entryPort [ flow:name "In" ; flow:param "Value" ] .
"""


def add_one(context):
    context.set_result("A", context.get_param("N") + 1)


def times_two(context):
    context.set_result("B", context.get_param("N") * 2)


def combine(context):
    context.set_result("Sum", context.get_param("A") + context.get_param("B"))


def double(context):
    context.set_result("Y", context.get_param("X") * 2)
    return True


@pytest.fixture
def storage():
    """In-memory storage."""
    return BaseStorageService(storage_path=None)


@pytest.fixture
def processes(storage):
    return ProcessRepository(storage)


@pytest.fixture
def tokens(storage):
    return TokenRepository(storage)


@pytest.fixture
def registry():
    registry = HandlerRegistry()
    register_builtin_handlers(registry)
    registry.register_handler("AddOne", add_one)
    registry.register_handler("TimesTwo", times_two)
    registry.register_handler("Combine", combine)
    registry.register_handler("Double", double)
    return registry


@pytest.fixture
def facade(processes, registry, tokens):
    """Facade with every demo process deployed."""
    for document in (
        LOOP_SUM_TTL,
        GUARDED_TTL,
        UNGUARDED_TTL,
        SUBPROCESS_TTL,
        APPROVAL_TTL,
        SPLIT_TTL,
        PARALLEL_TTL,
        SINGLE_TTL,
    ):
        processes.deploy(document)
    return ProcessFacade(
        processes,
        registry,
        tokens,
        evaluator=ConditionEvaluator(),
        settings=EngineSettings(storage_path="", workers=4),
    )
