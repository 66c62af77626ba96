"""Custom exceptions for qemulab."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigReadError(ManagerError):
    """A configuration file could not be read."""


class ConfigParseError(ManagerError):
    """A configuration file is not valid YAML or has the wrong shape."""


class CatalogReadError(ConfigReadError):
    pass


class CatalogParseError(ConfigParseError):
    pass


class CatalogWriteError(ManagerError):
    pass


class UnknownImage(ManagerError):
    """The image name is not declared in the catalog."""


class ImageNotFound(ManagerError):
    """The image file is not present in any searched directory."""


ImageDoesNotExist = ImageNotFound


class DownloadError(ManagerError):
    pass


class FileSystemError(ManagerError):
    pass


class TemplateError(ManagerError):
    """A placeholder could not be resolved or the template is malformed."""


class RenderError(TemplateError):
    """Template rendering failed while resolving a VM."""

    def __init__(self, vm_name: str, reason: str) -> None:
        super().__init__(f"Failed to render VM '{vm_name}': {reason}")
        self.vm_name = vm_name


class NotRunningError(ManagerError):
    def __init__(self, vm_name: str) -> None:
        super().__init__(f"VM '{vm_name}' is not running")
        self.vm_name = vm_name


class NoMatchingVMError(ManagerError):
    def __init__(self) -> None:
        super().__init__("No VMs match the selection")


class CyclicParentError(ManagerError):
    def __init__(self, chain) -> None:
        super().__init__(f"Cyclic parent chain: {' -> '.join(chain)}")
        self.chain = list(chain)


class UnknownParentError(ManagerError):
    def __init__(self, vm_name: str, parent: str) -> None:
        super().__init__(f"VM '{vm_name}' declares unknown parent '{parent}'")
        self.vm_name = vm_name
        self.parent = parent


class VMExistsError(ManagerError):
    pass


class SSHFailed(ManagerError):
    def __init__(self, vm_name: str) -> None:
        super().__init__(f"ssh to '{vm_name}' failed")
        self.vm_name = vm_name
