"""
Minible package module

Generic OS package management.
"""

import shlex
from typing import Dict, List, Optional

from minible.modules.base import Module, ModuleResult, register_module
from minible.modules.builtin_apt import APT_STATES, AptModule, as_package_list


# Checked in order; the first one found on the host is used
PACKAGE_MANAGERS = (
    ("apt-get", "apt"),
    ("dnf", "dnf"),
    ("yum", "yum"),
)


@register_module
class PackageModule(Module):
    """
    Generic OS package manager module.

    Detects the package manager (or takes it from ``use``) and installs,
    removes or upgrades only the packages that need it. apt hosts are
    handed to the apt module.
    """

    name = "package"
    required_args = ["name"]
    optional_args = {
        "state": "present",     # present, absent, latest
        "use": "auto",          # auto, apt, dnf, yum
    }

    def validate_args(self) -> str | None:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("state") not in APT_STATES:
            return f"Unknown state: {self.get_arg('state')}. Valid: {', '.join(APT_STATES)}"
        return None

    async def run(self) -> ModuleResult:
        packages = as_package_list(self.args["name"])
        state = self.get_arg("state", "present")

        manager = self.get_arg("use", "auto")
        if manager == "auto":
            manager = await self._detect_package_manager()
        if not manager:
            return ModuleResult(failed=True, msg="Could not detect a supported package manager on this host")

        if manager == "apt":
            apt_args = {"name": packages, "state": state}
            return await AptModule(apt_args, self.context, self.task_vars).run()
        if manager in ("dnf", "yum"):
            return await self._run_rpm(manager, packages, state)

        return ModuleResult(failed=True, msg=f"Unsupported package manager: {manager}")

    async def _detect_package_manager(self) -> Optional[str]:
        for binary, manager in PACKAGE_MANAGERS:
            result = await self.run_command(f"command -v {binary}", become=False)
            if result.rc == 0:
                return manager
        return None

    async def _installed(self, packages: List[str]) -> Dict[str, bool]:
        installed = {}
        for package in packages:
            result = await self.run_command(f"rpm -q {shlex.quote(package)}", become=False)
            installed[package] = result.rc == 0
        return installed

    async def _run_rpm(self, manager: str, packages: List[str], state: str) -> ModuleResult:
        installed = await self._installed(packages)

        if state in ("absent", "removed"):
            targets = [p for p in packages if installed[p]]
            action, done = "remove", "Removed"
        elif state == "latest":
            missing = [p for p in packages if not installed[p]]
            targets = missing + await self._updates_available(manager, [p for p in packages if installed[p]])
            action, done = "install", "Installed or upgraded"
        else:
            targets = [p for p in packages if not installed[p]]
            action, done = "install", "Installed"

        results = {"packages": targets, "state": state, "manager": manager}
        if not targets:
            return ModuleResult(changed=False, msg=f"All packages already {state}", results=results)

        if self.check_mode:
            return ModuleResult(changed=True, msg=f"Would {action}: {', '.join(targets)}", results=results)

        cmd = f"{manager} {action} -y " + " ".join(shlex.quote(p) for p in targets)
        result = await self.run_command(cmd)
        if result.rc != 0:
            return ModuleResult(
                failed=True,
                rc=result.rc,
                stdout=result.stdout,
                stderr=result.stderr,
                msg=f"{manager} failed: {result.stderr.strip()}",
                results=results,
            )

        return ModuleResult(
            changed=True,
            rc=result.rc,
            stdout=result.stdout,
            msg=f"{done}: {', '.join(targets)}",
            results=results,
        )

    async def _updates_available(self, manager: str, packages: List[str]) -> List[str]:
        """Installed packages with a newer version in the repositories."""
        if not packages:
            return []
        # check-update exits 100 when updates exist
        names = " ".join(shlex.quote(p) for p in packages)
        result = await self.run_command(f"{manager} -q check-update {names}", become=False)
        if result.rc != 100:
            return []
        listed = {line.split()[0].rsplit(".", 1)[0] for line in result.stdout.splitlines() if line.strip()}
        return [p for p in packages if p in listed]
