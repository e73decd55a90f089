from .rules import ApprovalRulesEngine, WorkflowAdmin
from .service import ApprovalService
from .triggers import ApprovalCompletionTrigger

__all__ = ["ApprovalCompletionTrigger", "ApprovalRulesEngine", "ApprovalService", "WorkflowAdmin"]
