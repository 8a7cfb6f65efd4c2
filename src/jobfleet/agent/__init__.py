from .agent import HostAgent, run_agent
from .api_client import APIError, CoordinatorClient
from .executor import execute_payload
from .models import ExecutionResult

__all__ = ["HostAgent", "run_agent", "APIError", "CoordinatorClient", "execute_payload", "ExecutionResult"]
