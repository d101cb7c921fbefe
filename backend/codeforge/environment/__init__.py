from codeforge.environment.base import (
    Capabilities,
    CommandOptions,
    CommandResult,
    EnvironmentKind,
    ExecutionEnvironment,
    ProcessHandle,
)
from codeforge.environment.browser import BrowserEnvironment, BrowserRuntime
from codeforge.environment.memory import MemoryEnvironment
from codeforge.environment.registry import EnvironmentRegistry
from codeforge.environment.remote import RemoteSandboxEnvironment
from codeforge.environment.runtime import RuntimeConfig, select_runtime
