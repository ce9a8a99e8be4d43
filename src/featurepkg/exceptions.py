"""Centralized exception hierarchy for featurepkg.

Errors carry a dotted message key plus parameters; ``str(err)`` renders the
English message used in logs and CLI output.
"""

MESSAGES: dict[str, str] = {
    "store.lock.held": "Package store is locked by another operation",
    "store.document.invalid": "Stored document '{kind}' is not valid: {error}",
    "manifest.alias.cycle": "Alias '{version}' did not resolve within {max_depth} steps",
    "manifest.version.invalid": "'{version}' is not a valid version",
    "repository.version.not_found": "Version '{version}' of package '{name}' not found in any source",
    "repository.url.unrecognized": "Cannot derive repository location from '{url}'",
    "repository.download.failed": "Failed to download {name} {version} from {url}: {error}",
    "repository.download.hash_mismatch": "Downloaded archive for {name} {version} has hash {actual}, expected {expected}",
    "install.dependency.not_found": "Failed to resolve {dependency} (v={constraint}) as dependency for {name}",
    "install.already_up_to_date": "Newest version of {name} already installed",
    "install.archive.invalid": "Archive {path} cannot be extracted: {error}",
    "install.archive.unsafe_path": "Archive entry '{entry}' escapes the install root",
    "remove.system_package": "System package {name} cannot be removed",
    "remove.version.missing": "Installed version {version} of {name} is missing from its manifest",
    "scripts.run.failed": "{kind} script of {name} exited with code {code}",
    "node.command.failed": "npm {command} failed with code {code}",
    "sources.branch.unknown": "Branch '{branch}' is not known for source {url}",
    "sources.not_found": "No source configured with url {url}",
    "config.path.unset": "Configuration value {field} is not set",
}


class AppBaseError(Exception):
    """Base exception for all application-specific errors."""

    def __init__(
        self,
        key: str,
        status_code: int = 500,
        retriable: bool = False,
        **params: object,
    ) -> None:
        """
        Initialize the error.

        Args:
            key: Dotted message key (e.g., 'repository.version.not_found')
            status_code: Recommended status code for front ends
            retriable: Whether the operation can be retried
            **params: Parameters for message formatting
        """
        super().__init__(key)
        self.key = key
        self.status_code = status_code
        self.retriable = retriable
        self.params = params

    def __str__(self) -> str:
        """Returns the English version of the error message."""
        template = MESSAGES.get(self.key)
        if template:
            try:
                return template.format(**self.params)
            except (KeyError, IndexError):
                pass
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"[{self.key}] {params_str} (retriable: {self.retriable})"


class ResourceNotFoundError(AppBaseError):
    """Raised when a requested resource (package, version, source) is not found."""

    def __init__(self, key: str, **params: object) -> None:
        super().__init__(key, status_code=404, **params)


class ResourceConflictError(AppBaseError):
    """Raised when an operation conflicts with the current state."""

    def __init__(self, key: str, **params: object) -> None:
        super().__init__(key, status_code=409, **params)


class ValidationError(AppBaseError):
    """Raised when input validation fails."""

    def __init__(self, key: str, **params: object) -> None:
        super().__init__(key, status_code=400, **params)


class OperationalError(AppBaseError):
    """Raised when an operational failure occurs (download, extraction, subprocess, etc.)."""

    def __init__(self, key: str, retriable: bool = False, **params: object) -> None:
        super().__init__(key, status_code=500, retriable=retriable, **params)


class LockHeldError(ResourceConflictError):
    """Raised when the package store lock is held by another execution context."""

    def __init__(self) -> None:
        super().__init__("store.lock.held")


class VersionNotFoundError(ResourceNotFoundError):
    """Raised when no configured source offers the requested package version."""

    def __init__(self, name: str, version: str) -> None:
        super().__init__("repository.version.not_found", name=name, version=version)
        self.name = name
        self.version = version


class DependencyVersionNotFoundError(ResourceNotFoundError):
    """Raised when a dependency of a package cannot be resolved."""

    def __init__(self, name: str, dependency: str, constraint: str) -> None:
        super().__init__("install.dependency.not_found", name=name, dependency=dependency, constraint=constraint)
        self.name = name
        self.dependency = dependency
        self.constraint = constraint


class AlreadyUpToDateError(ResourceConflictError):
    """Raised when the newest version of a package is already installed."""

    def __init__(self, name: str, version: str) -> None:
        super().__init__("install.already_up_to_date", name=name, version=version)
        self.name = name
        self.version = version


class AliasCycleError(ValidationError):
    """Raised when following version aliases does not terminate."""

    def __init__(self, version: str, max_depth: int) -> None:
        super().__init__("manifest.alias.cycle", version=version, max_depth=max_depth)


class SystemPackageError(ResourceConflictError):
    """Raised when removal of a system package is refused."""

    def __init__(self, name: str) -> None:
        super().__init__("remove.system_package", name=name)
