"""
Minible service module

Manage services on Linux/Unix systems.
"""

import shlex
from typing import List, Optional, Tuple

from minible.engine.templating import to_bool
from minible.modules.base import Module, ModuleResult, register_module


SERVICE_STATES = ("started", "stopped", "restarted", "reloaded")


@register_module
class ServiceModule(Module):
    """
    Manage services (start, stop, restart, reload, enable, disable).

    Supports systemd and sysvinit. ``started``/``stopped`` and ``enabled``
    look at the current state first and only act when it differs;
    ``restarted`` and ``reloaded`` always act.
    """

    name = "service"
    required_args = ["name"]
    optional_args = {
        "state": None,      # started, stopped, restarted, reloaded
        "enabled": None,    # yes/no
        "use": "auto",      # auto, systemd, sysvinit
    }

    def validate_args(self) -> str | None:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state is None and self.get_arg("enabled") is None:
            return "Either 'state' or 'enabled' must be specified"
        if state is not None and state not in SERVICE_STATES:
            return f"Unknown state: {state}. Valid: {', '.join(SERVICE_STATES)}"
        return None

    async def run(self) -> ModuleResult:
        name = str(self.args["name"])
        state = self.get_arg("state")
        enabled = self.get_arg("enabled")
        if enabled is not None:
            enabled = to_bool(enabled)

        manager = self.get_arg("use", "auto")
        if manager == "auto":
            manager = await self._detect_service_manager()

        changed = False
        messages: List[str] = []

        if state:
            action = await self._state_action(name, state, manager)
            if action:
                error = await self._act(name, action, manager)
                if error:
                    return ModuleResult(failed=True, msg=error, results={"name": name, "state": state})
                changed = True
                messages.append(f"Service '{name}' {_past(action)}")
            else:
                messages.append(f"Service '{name}' already {state}")

        if enabled is not None:
            enable_changed, error = await self._set_enabled(name, enabled, manager)
            if error:
                return ModuleResult(failed=True, msg=error, results={"name": name, "enabled": enabled})
            changed = changed or enable_changed
            word = "enabled" if enabled else "disabled"
            messages.append(f"Service '{name}' {word}" if enable_changed else f"Service '{name}' already {word}")

        if self.check_mode and changed:
            messages = [f"{m} (check mode)" for m in messages]

        return ModuleResult(
            changed=changed,
            msg="; ".join(messages),
            results={"name": name, "state": state, "enabled": enabled},
        )

    async def _detect_service_manager(self) -> str:
        result = await self.run_command("command -v systemctl", become=False)
        if result.rc == 0:
            return "systemd"
        return "sysvinit"

    async def _is_running(self, name: str, manager: str) -> bool:
        if manager == "systemd":
            cmd = f"systemctl is-active --quiet {shlex.quote(name)}"
        else:
            cmd = f"service {shlex.quote(name)} status"
        result = await self.run_command(cmd)
        return result.rc == 0

    async def _state_action(self, name: str, state: str, manager: str) -> Optional[str]:
        """The action needed to reach ``state``, or None if already there."""
        if state == "restarted":
            return "restart"
        if state == "reloaded":
            return "reload"

        running = await self._is_running(name, manager)
        if state == "started":
            return None if running else "start"
        return "stop" if running else None

    async def _act(self, name: str, action: str, manager: str) -> Optional[str]:
        """Run a start/stop/restart/reload. Returns an error message on failure."""
        if self.check_mode:
            return None
        if manager == "systemd":
            cmd = f"systemctl {action} {shlex.quote(name)}"
        else:
            cmd = f"service {shlex.quote(name)} {action}"
        result = await self.run_command(cmd)
        if result.rc != 0:
            return f"Failed to {action} '{name}': {result.stderr.strip() or result.stdout.strip()}"
        return None

    async def _set_enabled(self, name: str, enabled: bool, manager: str) -> Tuple[bool, Optional[str]]:
        action = "enable" if enabled else "disable"
        quoted = shlex.quote(name)

        if manager == "systemd":
            check = await self.run_command(f"systemctl is-enabled --quiet {quoted}")
            if (check.rc == 0) == enabled:
                return False, None
            cmd = f"systemctl {action} {quoted}"
        else:
            check = await self.run_command(f"ls /etc/rc?.d/S??{quoted} >/dev/null 2>&1", become=False)
            if (check.rc == 0) == enabled:
                return False, None
            cmd = f"update-rc.d {quoted} {'defaults' if enabled else 'remove'}"

        if self.check_mode:
            return True, None

        result = await self.run_command(cmd)
        if result.rc != 0:
            return False, f"Failed to {action} '{name}': {result.stderr.strip()}"
        return True, None


def _past(action: str) -> str:
    return {"start": "started", "stop": "stopped", "restart": "restarted", "reload": "reloaded"}[action]
