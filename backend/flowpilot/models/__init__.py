from flowpilot.models.page_object import Page, Selector
from flowpilot.models.flow import TestFlow, FlowRun
from flowpilot.models.workflow import Workflow, WorkflowRun, NodeExecution
from flowpilot.models.function import UserFunction
from flowpilot.models.dataset import Dataset
from flowpilot.models.scheduled_job import ScheduledJob

__all__ = [
    "Page",
    "Selector",
    "TestFlow",
    "FlowRun",
    "Workflow",
    "WorkflowRun",
    "NodeExecution",
    "UserFunction",
    "Dataset",
    "ScheduledJob",
]
