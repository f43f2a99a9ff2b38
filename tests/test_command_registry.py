from nodepulse.services.command_registry import (
    COMMAND_REGISTRY,
    TIER_LIVE,
    TIER_HEALTH,
    TIER_HARDWARE,
    commands_for_tier,
    commands_by_capability,
    get_command,
    tier_interval,
)


def keys(commands):
    return {cmd.key for cmd in commands}


def test_commands_without_requirement_always_included():
    live = keys(commands_for_tier(TIER_LIVE, {}))
    assert {"system.uptime", "system.memory", "system.nproc"} <= live
    assert "docker.stats" not in live


def test_capability_gates_commands():
    assert "docker.stats" in keys(commands_for_tier(TIER_LIVE, {"docker": True}))
    assert "docker.stats" not in keys(commands_for_tier(TIER_LIVE, {"docker": False}))
    health = keys(commands_for_tier(TIER_HEALTH, {"zfs": True, "gpu": True}))
    assert {"zfs.pools", "gpu.nvidia", "storage.df"} <= health
    assert "sensors.thermal" not in health


def test_none_capabilities_means_empty_set():
    assert keys(commands_for_tier(TIER_HARDWARE, None)) == keys(commands_for_tier(TIER_HARDWARE, {}))


def test_every_command_in_exactly_one_tier():
    tiers = [keys(commands_for_tier(tier, {"docker": 1, "sensors": 1, "thermal": 1, "gpu": 1, "zfs": 1, "smart": 1}))
             for tier in (TIER_LIVE, TIER_HEALTH, TIER_HARDWARE)]
    assert sum(len(t) for t in tiers) == len(COMMAND_REGISTRY)
    assert not (tiers[0] & tiers[1]) and not (tiers[1] & tiers[2])


def test_get_command():
    assert get_command("storage.df").tier == TIER_HEALTH
    assert get_command("nope") is None


def test_fallback_is_chained():
    cmd = get_command("hardware.fastfetch")
    assert cmd.shell.startswith("{ fastfetch")
    assert "} || { inxi" in cmd.shell
    assert get_command("system.uptime").shell == "uptime"


def test_commands_by_capability_and_intervals():
    assert keys(commands_by_capability("smart")) == {"storage.smart"}
    assert tier_interval(TIER_LIVE) == 5
    assert tier_interval(TIER_HEALTH) == 30
    assert tier_interval(TIER_HARDWARE) == 300
