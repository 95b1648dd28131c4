from txnflow.engine.engine import NavigationResult, WorkflowEngine

__all__ = ["NavigationResult", "WorkflowEngine"]
