from .controller import WorkflowController
from .models import WorkflowDocument, WorkflowEdge, WorkflowGraph, create_node

__all__ = ["WorkflowController", "WorkflowDocument", "WorkflowEdge", "WorkflowGraph", "create_node"]
