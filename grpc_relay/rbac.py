"""Role-based authorization of controllers against devices."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ControllerPrincipal:
    """An authenticated controller."""

    controller_id: str
    role: str
    allowed_project_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DevicePrincipal:
    """An authenticated device and the project it belongs to."""

    device_id: str
    project_id: str


class AuthorizationError(Exception):
    """A controller is not allowed to perform a request."""


class Unauthorized(AuthorizationError):
    """The caller is not authenticated."""


class MethodNotAllowed(AuthorizationError):
    """The method is not in the whitelist."""


class DeviceProjectForbidden(AuthorizationError):
    """The device belongs to a project the controller may not access."""


@dataclass
class RbacPolicyEngine:
    """Method whitelist plus project-ownership checks."""

    enabled: bool = True
    method_whitelist: list[str] = field(default_factory=list)

    def is_method_allowed(self, method_name: str) -> bool:
        if not self.enabled or not self.method_whitelist:
            return True
        return method_name in self.method_whitelist

    def authorize_controller_to_device(
        self,
        controller: ControllerPrincipal,
        device: DevicePrincipal,
        method_name: str,
    ) -> None:
        """Raise an AuthorizationError unless the controller may call the device.

        Admins pass any whitelisted method; other roles need the device's project
        among their allowed projects.
        """
        if not self.enabled:
            return
        if not self.is_method_allowed(method_name):
            raise MethodNotAllowed(f"method {method_name!r} is not allowed")
        if controller.role == "admin":
            return
        if device.project_id not in controller.allowed_project_ids:
            raise DeviceProjectForbidden(
                f"controller {controller.controller_id!r} may not access "
                f"project {device.project_id!r}"
            )