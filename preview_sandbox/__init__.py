from .errors import SandboxError, SandboxErrorKind
from .logging import SandboxLogger
from .manifest import DependencyManifest, missing_dependencies
from .sandbox import (
    CommandResult,
    ExecutionRequest,
    FileSpec,
    FileWriteReport,
    ManagedSandbox,
    SandboxConfig,
    create_sandbox,
    reconnect_sandbox,
)
from .provisioning.devserver import (
    DevServer,
    DevServerOptions,
    HttpProbe,
    ProcessProbe,
    SocketProbe,
)
from .provisioning.install import InstallOptions, InstallStrategy
from .provisioning.setup import PreviewResult, ProjectFile, ProvisionRequest, provision_preview

__all__ = [
    "CommandResult",
    "DependencyManifest",
    "DevServer",
    "DevServerOptions",
    "ExecutionRequest",
    "FileSpec",
    "FileWriteReport",
    "HttpProbe",
    "InstallOptions",
    "InstallStrategy",
    "ManagedSandbox",
    "PreviewResult",
    "ProcessProbe",
    "ProjectFile",
    "ProvisionRequest",
    "SandboxConfig",
    "SandboxError",
    "SandboxErrorKind",
    "SandboxLogger",
    "SocketProbe",
    "create_sandbox",
    "missing_dependencies",
    "provision_preview",
    "reconnect_sandbox",
]
