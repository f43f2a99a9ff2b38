"""Command registry - catalog of remote probes for tiered polling.

Every probe declares its polling tier, the capability a node needs to run
it, and the format of its output. The capability set detected per node
decides which probes run, so adding a probe never touches the pollers.

Tier 1 (5s):   live metrics         | uptime, free, docker stats
Tier 2 (30s):  status & health      | df, lsblk, sensors, GPU, ZFS
Tier 3 (5m):   identity & hardware  | fastfetch/inxi, lspci, lsusb, smartctl
"""
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

TIER_LIVE = 1
TIER_HEALTH = 2
TIER_HARDWARE = 3

TIER_INTERVALS = {
    TIER_LIVE: 5,
    TIER_HEALTH: 30,
    TIER_HARDWARE: 300,
}


@dataclass(frozen=True)
class CommandDescriptor:
    """Static definition of one remote probe."""
    key: str
    command: str
    tier: int
    requires: Optional[str] = None  # Capability name, None = always available
    parse_format: str = "text"  # text, columns, json, jsonl, csv, custom
    fallback: Optional[str] = None
    description: str = ""

    @property
    def shell(self) -> str:
        """Command line to send, with the fallback chained on failure."""
        if self.fallback:
            return f"{{ {self.command}; }} || {{ {self.fallback}; }}"
        return self.command


_COMMANDS = [
    # Tier 1: live metrics
    CommandDescriptor(
        key="system.uptime",
        command="uptime",
        tier=TIER_LIVE,
        parse_format="text",
        description="System load average and uptime",
    ),
    CommandDescriptor(
        key="system.memory",
        command="free -b",
        tier=TIER_LIVE,
        parse_format="columns",
        description="Memory and swap usage",
    ),
    CommandDescriptor(
        key="system.nproc",
        command="nproc 2>/dev/null || echo 1",
        tier=TIER_LIVE,
        parse_format="text",
        description="Online CPU count, for load-based CPU estimation",
    ),
    CommandDescriptor(
        key="docker.stats",
        command="docker stats --no-stream --format '{{json .}}' 2>/dev/null",
        tier=TIER_LIVE,
        requires="docker",
        parse_format="jsonl",
        description="Docker container resource usage",
    ),

    # Tier 2: status & health
    CommandDescriptor(
        key="storage.df",
        command="df -B1 / 2>/dev/null | tail -1",
        tier=TIER_HEALTH,
        parse_format="columns",
        description="Root filesystem usage",
    ),
    CommandDescriptor(
        key="storage.lsblk",
        command="lsblk -b -o NAME,SIZE,FSUSED,FSAVAIL,MOUNTPOINT --json 2>/dev/null",
        tier=TIER_HEALTH,
        parse_format="json",
        description="Block device information",
    ),
    CommandDescriptor(
        key="sensors.thermal",
        command="sensors -u 2>/dev/null | grep -E 'temp[0-9]+_input' | head -1",
        tier=TIER_HEALTH,
        requires="sensors",
        parse_format="custom",
        fallback="cat /sys/class/thermal/thermal_zone0/temp 2>/dev/null",
        description="CPU temperature from lm-sensors",
    ),
    CommandDescriptor(
        key="sensors.zone",
        command="cat /sys/class/thermal/thermal_zone0/temp 2>/dev/null",
        tier=TIER_HEALTH,
        requires="thermal",
        parse_format="custom",
        description="CPU temperature from sysfs (millidegrees)",
    ),
    CommandDescriptor(
        key="gpu.nvidia",
        command=(
            "nvidia-smi --query-gpu=index,name,temperature.gpu,utilization.gpu,memory.used,memory.total "
            "--format=csv,noheader,nounits 2>/dev/null"
        ),
        tier=TIER_HEALTH,
        requires="gpu",
        parse_format="csv",
        description="NVIDIA GPU metrics",
    ),
    CommandDescriptor(
        key="zfs.pools",
        command="zpool list -H -o name,size,alloc,free,health 2>/dev/null",
        tier=TIER_HEALTH,
        requires="zfs",
        parse_format="columns",
        description="ZFS pool status",
    ),

    # Tier 3: identity & hardware
    CommandDescriptor(
        key="hardware.fastfetch",
        command="fastfetch --format json 2>/dev/null",
        tier=TIER_HARDWARE,
        parse_format="json",
        fallback="inxi -Fzxxx --output json --output-file print 2>/dev/null",
        description="System identity (fastfetch, falls back to inxi)",
    ),
    CommandDescriptor(
        key="hardware.lspci",
        command="lspci -mm 2>/dev/null",
        tier=TIER_HARDWARE,
        parse_format="custom",
        description="PCI device listing",
    ),
    CommandDescriptor(
        key="hardware.lsusb",
        command="lsusb 2>/dev/null",
        tier=TIER_HARDWARE,
        parse_format="custom",
        description="USB device listing",
    ),
    CommandDescriptor(
        key="storage.smart",
        command="smartctl -H /dev/sda 2>/dev/null",
        tier=TIER_HARDWARE,
        requires="smart",
        parse_format="custom",
        description="SMART overall health of the first disk",
    ),
]

COMMAND_REGISTRY: Dict[str, CommandDescriptor] = {cmd.key: cmd for cmd in _COMMANDS}


def commands_for_tier(tier: int, capabilities: Optional[Mapping[str, object]] = None) -> List[CommandDescriptor]:
    """All probes of ``tier`` whose capability requirement is met.

    Probes without a requirement are always included; a requirement is met
    when the capability is present and truthy in ``capabilities``.
    """
    capabilities = capabilities or {}
    return [
        cmd for cmd in COMMAND_REGISTRY.values()
        if cmd.tier == tier and (cmd.requires is None or capabilities.get(cmd.requires))
    ]


def get_command(key: str) -> Optional[CommandDescriptor]:
    return COMMAND_REGISTRY.get(key)


def commands_by_capability(capability: str) -> List[CommandDescriptor]:
    return [cmd for cmd in COMMAND_REGISTRY.values() if cmd.requires == capability]


def tier_interval(tier: int) -> int:
    """Default interval for a tier in seconds."""
    return TIER_INTERVALS.get(tier, TIER_INTERVALS[TIER_LIVE])
