import json
import random

import pytest

from nodepulse.services.parsers import (
    TIER1_FIELDS,
    TIER2_FIELDS,
    build_command_batch,
    estimate_cpu_percent,
    is_child_error,
    is_valid_ip,
    parse_child_segment,
    parse_df,
    parse_docker_ps,
    parse_free,
    parse_pct_list,
    parse_qm_list,
    parse_capabilities,
    parse_temperature,
    parse_tier1,
    parse_tier2,
    parse_uptime,
    split_child_output,
    split_command_output,
    unwrap_guest_exec,
)

UPTIME = " 10:15:01 up 12 days,  3:04,  2 users,  load average: 0.52, 0.58, 0.59"
FREE = """               total        used        free      shared  buff/cache   available
Mem:      8000000000  2000000000  4000000000    10000000  2000000000  5800000000
Swap:     1000000000    50000000   950000000"""
DF = "/dev/sda1  100000000000  25000000000  75000000000  25% /"


@pytest.mark.parametrize("count", [0, 1, 5, 100])
def test_child_delimiter_round_trip(count):
    rng = random.Random(count)
    ids = rng.sample(range(1, 100000), count)
    payloads = {child_id: f"\n===LOAD===\n0.{child_id % 10} 0.1 0.1\nline with --- dashes {child_id}\n" for child_id in ids}
    order = list(ids)
    rng.shuffle(order)
    raw = "".join(f"---CHILD:{child_id}---{payloads[child_id]}" for child_id in order)

    assert split_child_output(raw) == payloads


def test_child_end_marker_is_cut():
    raw = "---CHILD:7---\nhello\n---END:7---\n---CHILD:8---\nCHILD_ERROR\n---END:8---\n"
    segments = split_child_output(raw)
    assert segments == {7: "\nhello\n", 8: "\nCHILD_ERROR\n"}
    assert not is_child_error(segments[7])
    assert is_child_error(segments[8])
    assert is_child_error("\n  \n")


def test_command_batch_split():
    script = build_command_batch([("system.uptime", "uptime"), ("system.memory", "free -b")])
    assert script.splitlines() == [
        "echo '---CMD:system.uptime---'",
        "uptime",
        "echo '---CMD:system.memory---'",
        "free -b",
    ]
    outputs = split_command_output(f"---CMD:system.uptime---\n{UPTIME}\n---CMD:system.memory---\n{FREE}")
    assert set(outputs) == {"system.uptime", "system.memory"}
    assert "load average" in outputs["system.uptime"]


def test_split_ignores_text_before_first_marker():
    assert split_command_output("motd banner\n---CMD:a---\nx") == {"a": "\nx"}
    assert split_child_output("") == {}


def test_parse_uptime():
    data = parse_uptime(UPTIME)
    assert data["uptime_seconds"] == 12 * 86400 + 3 * 3600 + 4 * 60
    assert data["users"] == 2
    assert data["load_1m"] == 0.52
    assert data["load_15m"] == 0.59


def test_parse_uptime_minutes_only():
    data = parse_uptime(" 10:15:01 up 5 min,  1 user,  load average: 1.00, 0.50, 0.25")
    assert data["uptime_seconds"] == 300
    assert data["users"] == 1


def test_parse_uptime_garbage_defaults_to_zero():
    data = parse_uptime("bash: uptime: command not found")
    assert data["load_1m"] == 0.0
    assert data["uptime_seconds"] == 0


def test_parse_free():
    data = parse_free(FREE)
    assert data["ram_total_bytes"] == 8000000000
    assert data["ram_used_bytes"] == 2000000000
    assert data["ram_available_bytes"] == 5800000000
    assert data["ram_percent"] == 25.0
    assert data["swap_used_bytes"] == 50000000


@pytest.mark.parametrize("load,cores", [(0, 1), (0.5, 4), (4, 4), (100, 2), (-1, 1), (3, 0)])
def test_cpu_estimate_in_range(load, cores):
    assert 0.0 <= estimate_cpu_percent(load, cores) <= 100.0


def test_tier_field_sets_are_disjoint():
    assert not set(TIER1_FIELDS) & set(TIER2_FIELDS)

    tier1 = parse_tier1({"system.uptime": UPTIME, "system.memory": FREE, "system.nproc": "4"})
    tier2 = parse_tier2({"storage.df": DF, "sensors.zone": "48500"})
    assert set(tier1) == set(TIER1_FIELDS)
    assert set(tier2) <= set(TIER2_FIELDS)
    assert tier1["cpu_cores"] == 4
    assert tier1["cpu_percent"] == 13.0
    assert tier2["disk_percent"] == 25.0
    assert tier2["temp_cpu"] == 48.5
    assert "gpu_temp" not in tier2


def test_parse_df_header_and_short_lines():
    assert parse_df("Filesystem 1B-blocks Used Available Use% Mounted\n" + DF)["disk_total_bytes"] == 100000000000
    assert parse_df("broken")["disk_percent"] == 0.0


def test_parse_temperature_formats():
    assert parse_temperature("  temp1_input: 52.000") == 52.0
    assert parse_temperature("61000") == 61.0
    assert parse_temperature("") is None


def test_parse_capabilities():
    assert parse_capabilities("docker=1\nproxmox=0\nnoise\n") == {"docker": True, "proxmox": False}


def test_parse_qm_list():
    text = """      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       100 win-vm               running    4096              64.00 1234
       101 test                 stopped    2048              32.00 0"""
    guests = parse_qm_list(text)
    assert [(g.vmid, g.name, g.status, g.guest_type) for g in guests] == [
        (100, "win-vm", "running", "vm"),
        (101, "test", "stopped", "vm"),
    ]


def test_parse_pct_list_with_lock_column():
    text = """VMID       Status     Lock         Name
101        running                 web
102        stopped    backup       db
103        running                 "media server\""""
    guests = parse_pct_list(text)
    assert [(g.vmid, g.status, g.name) for g in guests][:2] == [(101, "running", "web"), (102, "stopped", "db")]
    assert guests[0].running
    assert not guests[1].running
    assert all(g.guest_type == "lxc" for g in guests)


def test_unwrap_guest_exec():
    envelope = json.dumps({"exitcode": 0, "exited": 1, "out-data": "===NPROC===\n2\n"})
    assert unwrap_guest_exec(envelope) == "===NPROC===\n2\n"
    assert unwrap_guest_exec("plain text") == "plain text"
    assert unwrap_guest_exec('{"out-data": broken') == '{"out-data": broken'


def test_parse_docker_ps():
    text = "abc123|web|nginx:latest|Up 2 hours|running\nbad line\ndef456|db|postgres:16|Exited (0)|exited"
    containers = parse_docker_ps(text)
    assert [c["container_id"] for c in containers] == ["abc123", "def456"]
    assert containers[1]["state"] == "exited"


def test_parse_child_segment():
    segment = (
        "\n===LOAD===\n2.00 1.00 0.50 1/100 999\n"
        "===NPROC===\n4\n"
        f"===MEM===\n{FREE}\n"
        "===DOCKER===\nabc|web|nginx|Up|running\ndef|db|pg|Exited|exited\n"
    )
    snapshot = parse_child_segment(segment)
    assert snapshot.stats["load_1m"] == 2.0
    assert snapshot.stats["cpu_cores"] == 4
    assert snapshot.stats["cpu_percent"] == 50.0
    assert snapshot.stats["ram_percent"] == 25.0
    assert snapshot.stats["containers_running"] == 1
    assert len(snapshot.containers) == 2


def test_parse_child_segment_tolerates_missing_sections():
    snapshot = parse_child_segment("\nsomething unexpected\n")
    assert snapshot.stats["cpu_cores"] == 1
    assert snapshot.stats["cpu_percent"] == 0.0
    assert snapshot.containers == []


def test_is_valid_ip():
    assert is_valid_ip("192.168.1.20")
    assert is_valid_ip("fd00::1")
    assert not is_valid_ip("127.0.0.1")
    assert not is_valid_ip("0.0.0.0")
    assert not is_valid_ip("not-an-ip")
