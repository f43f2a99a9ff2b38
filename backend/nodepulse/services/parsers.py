"""Parsers for remote command output.

All functions here are pure: text in, plain data out. They are tolerant by
design of the data they face - a guest without Docker, a host without
sensors or a truncated line yields zero/None for the affected fields and a
warning in the log, never an exception.

Batch wire format:
    ---CMD:<key>---      precedes the output of one probe in a tier batch
    ---CHILD:<id>---     precedes the output of one guest in a child batch
    ---END:<id>---       follows the output of one guest in a child batch
    CHILD_ERROR          printed when a guest probe failed or timed out
"""
import ipaddress
import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

COMMAND_MARKER = "---CMD:{key}---"
CHILD_MARKER = "---CHILD:{id}---"
CHILD_END_MARKER = "---END:{id}---"
CHILD_ERROR = "CHILD_ERROR"

_COMMAND_RE = re.compile(r"---CMD:([\w.-]+)---")
_CHILD_RE = re.compile(r"---CHILD:(\d+)---")
_SECTION_RE = re.compile(r"===(\w+)===")

# Fields each tier owns in the current-stats snapshot (disjoint)
TIER1_FIELDS = (
    "cpu_percent",
    "cpu_cores",
    "load_1m",
    "load_5m",
    "load_15m",
    "ram_total_bytes",
    "ram_used_bytes",
    "ram_available_bytes",
    "ram_percent",
    "swap_used_bytes",
    "uptime_seconds",
    "users",
    "containers_running",
)

TIER2_FIELDS = (
    "disk_total_bytes",
    "disk_used_bytes",
    "disk_available_bytes",
    "disk_percent",
    "temp_cpu",
    "gpu_temp",
    "gpu_utilization",
    "zfs_pools",
    "zfs_degraded",
)

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}

# pct list puts an optional lock column between status and name
_PCT_LOCKS = {"backup", "create", "destroyed", "disk", "fstrim", "migrate", "mounted", "rollback", "snapshot", "snapshot-delete", "suspended", "suspending"}


def _to_int(value, default: int = 0, field_name: str = "") -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        if value not in (None, ""):
            logger.warning(f"Malformed integer for {field_name or 'field'}: {str(value)[:40]!r}")
        return default


def _to_float(value, default: float = 0.0, field_name: str = "") -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        if value not in (None, ""):
            logger.warning(f"Malformed number for {field_name or 'field'}: {str(value)[:40]!r}")
        return default
    # NaN and infinity never make it into the stats tables
    if result != result or result in (float("inf"), float("-inf")):
        logger.warning(f"Non-finite number for {field_name or 'field'}, replacing with {default}")
        return default
    return result


def _percent(part: float, total: float) -> float:
    return round(part / total * 100, 1) if total > 0 else 0.0


# =============================================================================
# Batch scripts and delimiters
# =============================================================================

def build_command_batch(commands: Iterable[Tuple[str, str]]) -> str:
    """Shell script running each ``(key, command)`` behind its own marker."""
    lines = []
    for key, command in commands:
        lines.append(f"echo '{COMMAND_MARKER.format(key=key)}'")
        lines.append(command)
    return "\n".join(lines)


def _split_on(raw: str, pattern: re.Pattern) -> List[Tuple[str, str]]:
    parts = pattern.split(raw or "")
    return [(parts[i], parts[i + 1]) for i in range(1, len(parts) - 1, 2)]


def split_command_output(raw: str) -> Dict[str, str]:
    """Map probe key -> raw output from a tier batch."""
    return {key: payload for key, payload in _split_on(raw, _COMMAND_RE)}


def split_child_output(raw: str) -> Dict[int, str]:
    """Map node id -> raw output segment from a child batch.

    Segments may arrive in any order. A trailing end marker for the same id
    is cut off; the payload itself is returned unmodified.
    """
    segments = {}
    for key, payload in _split_on(raw, _CHILD_RE):
        child_id = int(key)
        end = payload.find(CHILD_END_MARKER.format(id=child_id))
        if end != -1:
            payload = payload[:end]
        segments[child_id] = payload
    return segments


def parse_sections(text: str) -> Dict[str, str]:
    """Split ``===NAME===`` delimited output into named sections."""
    return {name: body for name, body in _split_on(text, _SECTION_RE)}


# =============================================================================
# Tier 1 - live metrics
# =============================================================================

_UPTIME_DAYS_RE = re.compile(r"up\s+(\d+)\s+days?")
_UPTIME_CLOCK_RE = re.compile(r"(\d+):(\d+),")
_UPTIME_MIN_RE = re.compile(r"(\d+)\s+min")
_LOAD_RE = re.compile(r"load averages?:\s*([\d.]+),?\s+([\d.]+),?\s+([\d.]+)")
_USERS_RE = re.compile(r"(\d+)\s+users?")


def parse_uptime(text: str) -> dict:
    """Parse ``uptime`` output.

    Handles "up 5 min", "up 3:04", "up 2 days, 3:04" and "up 12 days, 42 min".
    """
    data = {"uptime_seconds": 0, "users": 0, "load_1m": 0.0, "load_5m": 0.0, "load_15m": 0.0}
    if not text:
        return data

    # Only look at the part between "up" and the user count / load average
    head = text.split("load average")[0]
    seconds = 0
    days = _UPTIME_DAYS_RE.search(head)
    if days:
        seconds += int(days.group(1)) * 86400
    clock = _UPTIME_CLOCK_RE.search(head.split("up", 1)[-1])
    if clock:
        seconds += int(clock.group(1)) * 3600 + int(clock.group(2)) * 60
    else:
        minutes = _UPTIME_MIN_RE.search(head)
        if minutes:
            seconds += int(minutes.group(1)) * 60
    data["uptime_seconds"] = seconds

    users = _USERS_RE.search(head)
    if users:
        data["users"] = int(users.group(1))

    load = _LOAD_RE.search(text)
    if load:
        data["load_1m"] = _to_float(load.group(1), field_name="load_1m")
        data["load_5m"] = _to_float(load.group(2), field_name="load_5m")
        data["load_15m"] = _to_float(load.group(3), field_name="load_15m")
    else:
        logger.warning("No load average in uptime output")
    return data


def parse_free(text: str) -> dict:
    """Parse ``free -b`` output into byte counts and a usage percentage."""
    data = {
        "ram_total_bytes": 0,
        "ram_used_bytes": 0,
        "ram_available_bytes": 0,
        "ram_percent": 0.0,
        "swap_used_bytes": 0,
    }
    for line in (text or "").splitlines():
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "Mem:" and len(parts) >= 4:
            total = _to_int(parts[1], field_name="mem_total")
            used = _to_int(parts[2], field_name="mem_used")
            # "available" is the 7th column on procps >= 3.3.10, else use "free"
            available = _to_int(parts[6] if len(parts) >= 7 else parts[3], field_name="mem_available")
            data["ram_total_bytes"] = total
            data["ram_used_bytes"] = used
            data["ram_available_bytes"] = available
            data["ram_percent"] = _percent(used, total)
        elif parts[0] == "Swap:" and len(parts) >= 3:
            data["swap_used_bytes"] = _to_int(parts[2], field_name="swap_used")
    return data


def parse_nproc(text: str) -> int:
    cores = _to_int((text or "").strip().split("\n")[0] if text else None, default=1, field_name="nproc")
    return max(cores, 1)


def estimate_cpu_percent(load_1m: float, cores: int) -> float:
    """Approximate CPU usage from the 1 minute load average.

    A rough heuristic: load per core as a percentage, clamped to [0, 100].
    """
    if cores <= 0:
        cores = 1
    return round(min(100.0, max(0.0, load_1m / cores * 100)), 1)


def parse_docker_stats(text: str) -> List[dict]:
    """Parse ``docker stats --format '{{json .}}'`` (one JSON object per line)."""
    containers = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or not line.startswith("{"):
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed docker stats line: {line[:60]!r}")
            continue
        containers.append({
            "container_id": item.get("ID") or item.get("Container"),
            "name": item.get("Name"),
            "cpu_percent": _to_float(str(item.get("CPUPerc", "0")).rstrip("%"), field_name="docker_cpu"),
            "mem_percent": _to_float(str(item.get("MemPerc", "0")).rstrip("%"), field_name="docker_mem"),
            "pids": _to_int(item.get("PIDs"), field_name="docker_pids"),
        })
    return containers


def parse_tier1(outputs: Dict[str, str]) -> dict:
    """Build the tier 1 field set from probe outputs keyed by registry key."""
    data = {}
    data.update(parse_uptime(outputs.get("system.uptime", "")))
    data.update(parse_free(outputs.get("system.memory", "")))
    data["cpu_cores"] = parse_nproc(outputs.get("system.nproc", ""))
    data["cpu_percent"] = estimate_cpu_percent(data["load_1m"], data["cpu_cores"])
    data["containers_running"] = len(parse_docker_stats(outputs.get("docker.stats", "")))
    return {key: data.get(key) for key in TIER1_FIELDS}


# =============================================================================
# Tier 2 - status & health
# =============================================================================

def parse_df(text: str) -> dict:
    """Parse one ``df -B1`` data line."""
    data = {"disk_total_bytes": 0, "disk_used_bytes": 0, "disk_available_bytes": 0, "disk_percent": 0.0}
    lines = [line for line in (text or "").splitlines() if line.strip() and not line.startswith("Filesystem")]
    if not lines:
        return data
    parts = lines[-1].split()
    if len(parts) < 6:
        logger.warning(f"Unexpected df line: {lines[-1][:80]!r}")
        return data
    total = _to_int(parts[1], field_name="disk_total")
    used = _to_int(parts[2], field_name="disk_used")
    data["disk_total_bytes"] = total
    data["disk_used_bytes"] = used
    data["disk_available_bytes"] = _to_int(parts[3], field_name="disk_available")
    data["disk_percent"] = _percent(used, total)
    return data


def parse_temperature(text: str) -> Optional[float]:
    """Parse either ``sensors -u`` input lines or sysfs millidegrees."""
    text = (text or "").strip()
    if not text:
        return None
    match = re.search(r"temp\d+_input:\s*([\d.]+)", text)
    if match:
        return _to_float(match.group(1), field_name="temp_cpu")
    value = _to_float(text.splitlines()[0], default=0.0, field_name="temp_cpu")
    if value <= 0:
        return None
    # sysfs reports millidegrees
    return round(value / 1000, 1) if value > 1000 else value


def parse_nvidia(text: str) -> dict:
    """First GPU from ``nvidia-smi --format=csv,noheader,nounits``."""
    for line in (text or "").splitlines():
        parts = [part.strip() for part in line.split(",")]
        if len(parts) >= 4:
            return {
                "gpu_temp": _to_float(parts[2], field_name="gpu_temp"),
                "gpu_utilization": _to_float(parts[3], field_name="gpu_utilization"),
            }
    return {"gpu_temp": None, "gpu_utilization": None}


def parse_zpool(text: str) -> dict:
    """Pool count and non-ONLINE pools from ``zpool list -H``."""
    pools = [line.split() for line in (text or "").splitlines() if line.strip()]
    pools = [parts for parts in pools if len(parts) >= 5]
    return {
        "zfs_pools": len(pools),
        "zfs_degraded": sum(1 for parts in pools if parts[4].upper() != "ONLINE"),
    }


def parse_tier2(outputs: Dict[str, str]) -> dict:
    """Build the tier 2 field set from probe outputs keyed by registry key."""
    data = parse_df(outputs.get("storage.df", ""))

    temp = None
    for key in ("sensors.thermal", "sensors.zone"):
        if key in outputs:
            temp = parse_temperature(outputs[key])
            if temp is not None:
                break
    data["temp_cpu"] = temp

    if "gpu.nvidia" in outputs:
        data.update(parse_nvidia(outputs["gpu.nvidia"]))
    if "zfs.pools" in outputs:
        data.update(parse_zpool(outputs["zfs.pools"]))

    # Only report fields this run actually observed or defaulted
    return {key: data[key] for key in TIER2_FIELDS if key in data}


# =============================================================================
# Tier 3 - identity & hardware
# =============================================================================

def parse_size(text) -> Optional[int]:
    """Parse "16 GiB", "512M" or a plain byte count into bytes."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return int(text)
    match = re.match(r"\s*([\d.]+)\s*([KMGT]?)i?B?\s*$", str(text), re.IGNORECASE)
    if not match:
        return None
    return int(float(match.group(1)) * _SIZE_UNITS[match.group(2).upper()])


def parse_hardware_json(text: str) -> dict:
    """Extract CPU, memory, OS and kernel from fastfetch or inxi JSON."""
    data = {"cpu_model": None, "cpu_cores": None, "ram_total_bytes": None, "os_name": None, "kernel": None}
    text = (text or "").strip()
    if not text:
        return data
    try:
        info = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Malformed hardware JSON: {e}")
        return data

    # fastfetch: [{"type": "CPU", "result": {...}}, ...]
    if isinstance(info, list):
        modules = {item.get("type"): item.get("result") for item in info if isinstance(item, dict)}
    elif isinstance(info, dict):
        modules = info
    else:
        return data

    cpu = modules.get("CPU")
    if isinstance(cpu, list) and cpu:
        cpu = cpu[0]
    if isinstance(cpu, dict):
        data["cpu_model"] = cpu.get("cpu") or cpu.get("name") or cpu.get("model")
        cores = cpu.get("cores") or cpu.get("core-count") or cpu.get("physicalCores")
        if isinstance(cores, dict):
            cores = cores.get("logical") or cores.get("physical")
        data["cpu_cores"] = _to_int(cores, default=0, field_name="cpu_cores") or None

    memory = modules.get("Memory")
    if isinstance(memory, dict):
        data["ram_total_bytes"] = parse_size(memory.get("total") or memory.get("size"))

    os_info = modules.get("OS")
    if isinstance(os_info, dict):
        data["os_name"] = os_info.get("prettyName") or os_info.get("name")

    kernel = modules.get("Kernel")
    if isinstance(kernel, dict):
        data["kernel"] = kernel.get("release") or kernel.get("name")
    return data


def parse_lspci(text: str) -> List[dict]:
    """Parse ``lspci -mm`` machine-readable lines."""
    devices = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        try:
            parts = shlex.split(line)
        except ValueError:
            logger.warning(f"Skipping malformed lspci line: {line[:60]!r}")
            continue
        if len(parts) >= 4:
            devices.append({"slot": parts[0], "class": parts[1], "vendor": parts[2], "device": parts[3]})
    return devices


_LSUSB_RE = re.compile(r"Bus\s+(\d+)\s+Device\s+(\d+):\s+ID\s+([0-9a-fA-F]{4}:[0-9a-fA-F]{4})\s*(.*)")


def parse_lsusb(text: str) -> List[dict]:
    devices = []
    for line in (text or "").splitlines():
        match = _LSUSB_RE.match(line.strip())
        if match:
            devices.append({
                "bus": match.group(1),
                "device": match.group(2),
                "id": match.group(3),
                "description": match.group(4).strip(),
            })
    return devices


def parse_smart_health(text: str) -> Optional[str]:
    match = re.search(r"(?:self-assessment test result|SMART Health Status):\s*(\w+)", text or "")
    return match.group(1).upper() if match else None


def parse_tier3(outputs: Dict[str, str]) -> dict:
    """Hardware snapshot from tier 3 probe outputs."""
    data = parse_hardware_json(outputs.get("hardware.fastfetch", ""))
    data["pci_devices"] = parse_lspci(outputs.get("hardware.lspci", ""))
    data["usb_devices"] = parse_lsusb(outputs.get("hardware.lsusb", ""))
    data["smart_health"] = parse_smart_health(outputs.get("storage.smart", ""))
    return data


# =============================================================================
# Host probe - capabilities and guest inventory
# =============================================================================

@dataclass
class GuestRecord:
    """A VM or container as listed by the hypervisor."""
    vmid: int
    guest_type: str  # vm, lxc
    status: str
    name: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.status == "running"


def parse_capabilities(text: str) -> Dict[str, bool]:
    """Parse ``name=1`` lines printed by the capability detection script."""
    capabilities = {}
    for line in (text or "").splitlines():
        name, sep, value = line.strip().partition("=")
        if sep and name:
            capabilities[name] = value.strip() == "1"
    return capabilities


def parse_qm_list(text: str) -> List[GuestRecord]:
    """Parse ``qm list``: VMID NAME STATUS MEM(MB) BOOTDISK(GB) PID."""
    guests = []
    for line in (text or "").splitlines():
        parts = line.split()
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        guests.append(GuestRecord(vmid=int(parts[0]), guest_type="vm", name=parts[1], status=parts[2].lower()))
    return guests


def parse_pct_list(text: str) -> List[GuestRecord]:
    """Parse ``pct list``: VMID Status [Lock] Name."""
    guests = []
    for line in (text or "").splitlines():
        parts = line.split()
        if len(parts) < 2 or not parts[0].isdigit():
            continue
        rest = parts[2:]
        if rest and rest[0].lower() in _PCT_LOCKS:
            rest = rest[1:]
        guests.append(GuestRecord(
            vmid=int(parts[0]),
            guest_type="lxc",
            name=" ".join(rest) or None,
            status=parts[1].lower(),
        ))
    return guests


# =============================================================================
# Child batch - per guest probe output
# =============================================================================

@dataclass
class ChildSnapshot:
    """Parsed output of one guest probe."""
    stats: dict = field(default_factory=dict)
    containers: List[dict] = field(default_factory=list)


def is_child_error(segment: str) -> bool:
    """True if a guest segment is empty or ends with the error marker."""
    lines = [line.strip() for line in (segment or "").splitlines() if line.strip()]
    return not lines or lines[-1] == CHILD_ERROR


def unwrap_guest_exec(segment: str) -> str:
    """Return the inner stdout of a ``qm guest exec`` JSON envelope."""
    stripped = (segment or "").strip()
    if stripped.startswith("{") and '"out-data"' in stripped:
        try:
            envelope = json.loads(stripped)
        except json.JSONDecodeError:
            return segment
        return envelope.get("out-data") or ""
    return segment


def parse_docker_ps(text: str) -> List[dict]:
    """Parse ``docker ps -a --format "{{.ID}}|{{.Names}}|{{.Image}}|{{.Status}}|{{.State}}"``."""
    containers = []
    for line in (text or "").splitlines():
        parts = line.strip().split("|")
        if len(parts) >= 5:
            containers.append({
                "container_id": parts[0],
                "name": parts[1],
                "image": parts[2],
                "status": parts[3],
                "state": parts[4],
            })
    return containers


def parse_child_segment(segment: str) -> ChildSnapshot:
    """Parse the LOAD/NPROC/MEM/DOCKER sections printed by a guest probe."""
    sections = parse_sections(unwrap_guest_exec(segment))

    stats = {}
    load_parts = sections.get("LOAD", "").split()
    load_1m = _to_float(load_parts[0], field_name="child_load") if load_parts else 0.0
    cores = parse_nproc(sections.get("NPROC", ""))
    stats["load_1m"] = load_1m
    stats["cpu_cores"] = cores
    stats["cpu_percent"] = estimate_cpu_percent(load_1m, cores)
    memory = parse_free(sections.get("MEM", ""))
    stats["ram_total_bytes"] = memory["ram_total_bytes"]
    stats["ram_used_bytes"] = memory["ram_used_bytes"]
    stats["ram_percent"] = memory["ram_percent"]

    containers = parse_docker_ps(sections.get("DOCKER", ""))
    stats["containers_running"] = sum(1 for c in containers if c["state"] == "running")
    return ChildSnapshot(stats=stats, containers=containers)


def is_valid_ip(text: str) -> bool:
    try:
        address = ipaddress.ip_address((text or "").strip())
    except ValueError:
        return False
    return not address.is_loopback and not address.is_unspecified
