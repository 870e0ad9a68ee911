"""
Minible apt module

Debian/Ubuntu package management.
"""

import re
import shlex
from typing import Dict, List, Tuple

from minible.modules.base import Module, ModuleResult, register_module


APT_ENV = "DEBIAN_FRONTEND=noninteractive"
APT_STATES = ("present", "installed", "absent", "removed", "latest")
SIMULATION_SUMMARY = re.compile(r"(\d+) upgraded, (\d+) newly installed")


def as_package_list(name) -> List[str]:
    """Accept a list, a comma-separated string, or a single name."""
    if not name:
        return []
    if isinstance(name, (list, tuple)):
        return [str(n).strip() for n in name if str(n).strip()]
    return [n.strip() for n in str(name).split(",") if n.strip()]


@register_module
class AptModule(Module):
    """
    Manage apt packages on Debian/Ubuntu systems.

    Installed packages are queried with dpkg-query first, so only the
    packages that actually need installing or removing are touched.
    """

    name = "apt"
    optional_args = {
        "name": None,           # Package name or list
        "state": "present",     # present, absent, latest
        "update_cache": False,  # Run apt-get update first
        "purge": False,         # Purge configuration on removal
    }

    def validate_args(self) -> str | None:
        if not self.get_arg("name") and not self.get_arg("update_cache"):
            return "One of 'name' or 'update_cache' is required"
        if self.get_arg("state") not in APT_STATES:
            return f"Unknown state: {self.get_arg('state')}. Valid: {', '.join(APT_STATES)}"
        return None

    async def run(self) -> ModuleResult:
        packages = as_package_list(self.get_arg("name"))
        state = self.get_arg("state", "present")
        messages: List[str] = []

        if self.get_arg("update_cache"):
            if self.check_mode:
                messages.append("Would update apt cache")
            else:
                result = await self.run_command("apt-get update -qq")
                if result.rc != 0:
                    return ModuleResult(
                        failed=True,
                        rc=result.rc,
                        stderr=result.stderr,
                        msg=f"Failed to update apt cache: {result.stderr.strip()}",
                    )
                messages.append("Updated apt cache")

        if not packages:
            return ModuleResult(changed=False, msg="; ".join(messages), results={"cache_updated": bool(messages)})

        installed = await self.installed_packages(packages)

        if state in ("absent", "removed"):
            targets = [p for p in packages if installed.get(p)]
            verb, done = "remove", "Removed"
            cmd = f"apt-get remove -y {'--purge ' if self.get_arg('purge') else ''}{_join(targets)}"
        elif state == "latest":
            targets = await self._upgradable(packages, installed)
            verb, done = "install or upgrade", "Installed or upgraded"
            cmd = f"apt-get install -y {_join(targets)}"
        else:
            targets = [p for p in packages if not installed.get(p)]
            verb, done = "install", "Installed"
            cmd = f"apt-get install -y {_join(targets)}"

        results = {"packages": targets, "state": state}
        if not targets:
            messages.append(f"All packages already {state}")
            return ModuleResult(changed=False, msg="; ".join(messages), results=results)

        if self.check_mode:
            messages.append(f"Would {verb}: {', '.join(targets)}")
            return ModuleResult(changed=True, msg="; ".join(messages), results=results)

        result = await self.run_command(f"{APT_ENV} {cmd}")
        if result.rc != 0:
            return ModuleResult(
                failed=True,
                rc=result.rc,
                stdout=result.stdout,
                stderr=result.stderr,
                msg=f"apt-get failed: {result.stderr.strip()}",
                results=results,
            )

        messages.append(f"{done}: {', '.join(targets)}")
        return ModuleResult(
            changed=True,
            rc=result.rc,
            stdout=result.stdout,
            msg="; ".join(messages),
            results=results,
        )

    async def installed_packages(self, packages: List[str]) -> Dict[str, bool]:
        """Map each package to whether dpkg reports it installed."""
        cmd = "dpkg-query -W -f='${Package} ${Status}\\n' " + _join(packages)
        result = await self.run_command(cmd, become=False)

        installed = {p: False for p in packages}
        for line in result.stdout.splitlines():
            package, _, status = line.partition(" ")
            # Architecture-qualified names come back as name:arch
            package = package.split(":")[0]
            if status.strip() == "install ok installed":
                for requested in packages:
                    if requested.split(":")[0].split("=")[0] == package:
                        installed[requested] = True
        return installed

    async def _upgradable(self, packages: List[str], installed: Dict[str, bool]) -> List[str]:
        """Packages that are missing, or that a simulated install would upgrade."""
        targets = [p for p in packages if not installed.get(p)]
        present = [p for p in packages if installed.get(p)]
        for package in present:
            result = await self.run_command(f"{APT_ENV} apt-get install -s -y {shlex.quote(package)}", become=False)
            upgraded, newly = _simulation_counts(result.stdout)
            if upgraded or newly:
                targets.append(package)
        return targets


def _simulation_counts(output: str) -> Tuple[int, int]:
    match = SIMULATION_SUMMARY.search(output)
    if not match:
        return 0, 0
    return int(match.group(1)), int(match.group(2))


def _join(packages: List[str]) -> str:
    return " ".join(shlex.quote(p) for p in packages)
