"""
Minible setup module (gather_facts)

Collect a minimal set of system facts from target hosts.
"""

import fnmatch
from typing import Dict

from minible.modules.base import Module, ModuleResult, register_module


OS_FAMILIES = {
    "Debian": ("ubuntu", "debian", "linuxmint", "pop", "raspbian"),
    "RedHat": ("redhat", "rhel", "centos", "fedora", "rocky", "almalinux", "alma", "ol", "amzn"),
    "Suse": ("suse", "opensuse", "opensuse-leap", "sles"),
    "Archlinux": ("arch", "manjaro", "endeavouros"),
    "Alpine": ("alpine",),
}


@register_module
class SetupModule(Module):
    """
    Gather minimal facts about target hosts.

    Collects ansible_system, ansible_hostname, ansible_fqdn,
    ansible_architecture, ansible_kernel, ansible_distribution,
    ansible_distribution_version, ansible_os_family and ansible_service_mgr.
    Read-only, so it also runs in check mode.
    """

    name = "setup"
    optional_args = {
        "filter": "*",
    }

    async def run(self) -> ModuleResult:
        facts = await self._gather_facts()

        pattern = str(self.get_arg("filter") or "*")
        facts = {k: v for k, v in facts.items() if fnmatch.fnmatch(k, pattern)}

        return ModuleResult(
            changed=False,
            msg="Facts gathered",
            results={"ansible_facts": facts},
        )

    async def _gather_facts(self) -> Dict[str, str]:
        facts: Dict[str, str] = {}

        simple = {
            "ansible_system": "uname -s",
            "ansible_kernel": "uname -r",
            "ansible_architecture": "uname -m",
            "ansible_hostname": "hostname -s 2>/dev/null || hostname",
            "ansible_fqdn": "hostname -f 2>/dev/null || hostname",
        }
        for fact, cmd in simple.items():
            result = await self.run_command(cmd, become=False)
            if result.rc == 0:
                facts[fact] = result.stdout.strip()

        result = await self.run_command("cat /etc/os-release 2>/dev/null", become=False)
        if result.rc == 0:
            facts.update(parse_os_release(result.stdout))
        facts["ansible_os_family"] = os_family(facts.get("ansible_distribution", ""))

        result = await self.run_command("ps -p 1 -o comm= 2>/dev/null", become=False)
        if result.rc == 0 and result.stdout.strip():
            facts["ansible_service_mgr"] = "systemd" if result.stdout.strip() == "systemd" else "sysvinit"

        return facts


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release content."""
    facts: Dict[str, str] = {}
    for line in content.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep:
            continue
        value = value.strip('"\'')
        if key == "ID":
            facts["ansible_distribution"] = value.capitalize()
        elif key == "VERSION_ID":
            facts["ansible_distribution_version"] = value
            facts["ansible_distribution_major_version"] = value.split(".")[0]
        elif key == "PRETTY_NAME":
            facts["ansible_distribution_pretty"] = value
    return facts


def os_family(distribution: str) -> str:
    """Map a distribution name to its OS family."""
    lowered = distribution.lower()
    for family, members in OS_FAMILIES.items():
        if lowered in members:
            return family
    return "Linux"
