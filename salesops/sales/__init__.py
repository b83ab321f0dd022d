from salesops.sales.activity import ActivityLogService, activity_log
from salesops.sales.calendar import CalendarLinkProvider, CalendlyLinkClient, calendar_client
from salesops.sales.jobs import SweepJobRunner, sweep_runner
from salesops.sales.mrr import MRRScheduler, mrr_scheduler
from salesops.sales.pipeline import PipelineStateMachine, pipeline
from salesops.sales.stages import StageCatalog, classify, stage_catalog
from salesops.sales.tasks import LeastLoadedRotation, RotationPolicy, TaskAssignmentEngine, task_engine
from salesops.sales.team import ActorUser, TeamDirectory, team_directory
from salesops.sales.undo import UndoAction, UndoLedger, undo_ledger

__all__ = [
    "ActivityLogService",
    "ActorUser",
    "CalendarLinkProvider",
    "CalendlyLinkClient",
    "LeastLoadedRotation",
    "MRRScheduler",
    "PipelineStateMachine",
    "RotationPolicy",
    "StageCatalog",
    "SweepJobRunner",
    "TaskAssignmentEngine",
    "TeamDirectory",
    "UndoAction",
    "UndoLedger",
    "activity_log",
    "calendar_client",
    "classify",
    "mrr_scheduler",
    "pipeline",
    "stage_catalog",
    "sweep_runner",
    "task_engine",
    "team_directory",
    "undo_ledger",
]
