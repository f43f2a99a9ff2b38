"""Host probe - capability detection and hypervisor guest inventory.

Runs once per node per global tick in a single SSH call. The detected
capability set decides which registry probes the tiered poller sends, and
on Proxmox hosts the ``qm list``/``pct list`` output feeds discovery.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..config import Settings, settings as default_settings
from .node_store import NodeStore
from .parsers import GuestRecord, parse_capabilities, parse_sections, parse_qm_list, parse_pct_list

logger = logging.getLogger(__name__)

CAPABILITY_CHECKS = {
    "docker": "command -v docker",
    "proxmox": "command -v pvesh",
    "sensors": "command -v sensors",
    "thermal": "test -r /sys/class/thermal/thermal_zone0/temp",
    "zfs": "command -v zpool",
    "smart": "command -v smartctl",
    "gpu": "command -v nvidia-smi",
}

# Printed when a guest listing command fails; an empty listing stays empty
LIST_FAILED = "LIST_FAILED"

# section name -> (listing command, guest type)
GUEST_LISTINGS = {
    "QM": ("qm list", "vm"),
    "PCT": ("pct list", "lxc"),
}


def build_probe_script() -> str:
    lines = ["echo ===CAPS==="]
    for name, check in CAPABILITY_CHECKS.items():
        lines.append(f"{check} >/dev/null 2>&1 && echo {name}=1 || echo {name}=0")
    lines.append("if command -v qm >/dev/null 2>&1; then")
    for section, (command, _) in GUEST_LISTINGS.items():
        lines.append(f"echo ==={section}===; {command} 2>/dev/null || echo {LIST_FAILED}")
    lines.append("fi")
    return "\n".join(lines)


PROBE_SCRIPT = build_probe_script()


@dataclass
class HostProbeResult:
    capabilities: Dict[str, bool] = field(default_factory=dict)
    guests: List[GuestRecord] = field(default_factory=list)
    # Guest types whose listing failed or was missing; their inventory is unknown
    failed_types: Set[str] = field(default_factory=set)

    @property
    def is_proxmox_host(self) -> bool:
        return bool(self.capabilities.get("proxmox"))

    @property
    def listed_types(self) -> List[str]:
        return [guest_type for _, guest_type in GUEST_LISTINGS.values() if guest_type not in self.failed_types]


def parse_probe_output(text: str) -> HostProbeResult:
    sections = parse_sections(text)
    result = HostProbeResult(capabilities=parse_capabilities(sections.get("CAPS", "")))
    if not result.is_proxmox_host:
        return result

    parsers = {"QM": parse_qm_list, "PCT": parse_pct_list}
    for section, (_, guest_type) in GUEST_LISTINGS.items():
        listing = sections.get(section)
        if listing is None or LIST_FAILED in listing:
            result.failed_types.add(guest_type)
            continue
        result.guests.extend(parsers[section](listing))
    return result


class HostProbe:
    """Detects capabilities and lists guests, then persists both."""

    def __init__(self, store: NodeStore, executor, config: Optional[Settings] = None):
        self.store = store
        self.executor = executor
        self.config = config or default_settings

    async def probe(self, node) -> HostProbeResult:
        """Probe ``node``. Raises RemoteExecutionError on transport failure."""
        raw = await self.executor.run(node, PROBE_SCRIPT, self.config.collection_timeout)
        result = parse_probe_output(raw.stdout)

        await self.store.save_discovery(node.id, result.capabilities)
        if result.is_proxmox_host:
            for guest_type in sorted(result.failed_types):
                logger.warning(f"{node.name}: {guest_type} listing failed, keeping previous inventory")
            if result.listed_types:
                await self.store.replace_guests(node.id, result.guests, guest_types=result.listed_types)
            logger.debug(f"{node.name}: Proxmox host with {len(result.guests)} guests")
        return result
