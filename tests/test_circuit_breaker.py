from nodepulse.services.circuit_breaker import CircuitBreaker, CLOSED, OPEN, HALF_OPEN


def fail(breaker, node_id, times):
    for _ in range(times):
        breaker.record_failure(node_id)


def test_new_entity_is_closed(breaker):
    assert breaker.can_execute(1)
    assert breaker.get_state(1) == CLOSED
    assert breaker.failures(1) == 0


def test_opens_after_threshold_failures(breaker):
    fail(breaker, 1, 2)
    assert breaker.can_execute(1)
    assert breaker.get_state(1) == CLOSED

    breaker.record_failure(1)
    assert breaker.get_state(1) == OPEN
    assert not breaker.can_execute(1)


def test_stays_open_until_timeout_elapsed(breaker, clock):
    fail(breaker, 1, 3)
    clock.advance(59)
    assert not breaker.can_execute(1)
    clock.advance(1)
    assert not breaker.can_execute(1)  # strictly greater than the timeout
    clock.advance(0.5)
    assert breaker.can_execute(1)
    assert breaker.get_state(1) == HALF_OPEN


def test_half_open_allows_exactly_one_probe(breaker, clock):
    fail(breaker, 1, 3)
    clock.advance(61)
    assert breaker.can_execute(1)
    assert not breaker.can_execute(1)
    assert not breaker.can_execute(1)


def test_half_open_success_closes(breaker, clock):
    fail(breaker, 1, 3)
    clock.advance(61)
    assert breaker.can_execute(1)
    breaker.record_success(1)
    assert breaker.get_state(1) == CLOSED
    assert breaker.failures(1) == 0
    assert breaker.can_execute(1)


def test_half_open_failure_reopens_and_keeps_counting(breaker, clock):
    fail(breaker, 1, 3)
    clock.advance(61)
    assert breaker.can_execute(1)
    breaker.record_failure(1)
    assert breaker.get_state(1) == OPEN
    assert breaker.failures(1) == 4
    # Timeout restarts from the failed probe
    clock.advance(30)
    assert not breaker.can_execute(1)
    clock.advance(31)
    assert breaker.can_execute(1)


def test_success_resets_from_any_state(breaker, clock):
    fail(breaker, 1, 2)
    breaker.record_success(1)
    assert breaker.failures(1) == 0

    fail(breaker, 2, 3)
    breaker.record_success(2)
    assert breaker.get_state(2) == CLOSED
    assert breaker.can_execute(2)


def test_entities_are_independent(breaker):
    fail(breaker, 1, 3)
    assert not breaker.can_execute(1)
    assert breaker.can_execute(2)


def test_is_blocked_does_not_consume_probe(breaker, clock):
    fail(breaker, 1, 3)
    assert breaker.is_blocked(1)
    clock.advance(61)
    assert not breaker.is_blocked(1)
    assert not breaker.is_blocked(1)
    assert breaker.get_state(1) == OPEN
    assert breaker.can_execute(1)
    assert breaker.is_blocked(1)


def test_is_blocked_unknown_entity(breaker):
    assert not breaker.is_blocked(42)


def test_custom_thresholds(clock):
    breaker = CircuitBreaker(failure_threshold=1, open_timeout=5, half_open_max_calls=2, clock=clock)
    breaker.record_failure("a")
    assert not breaker.can_execute("a")
    clock.advance(6)
    assert breaker.can_execute("a")
    assert breaker.can_execute("a")
    assert not breaker.can_execute("a")


def test_reset_and_reset_all(breaker):
    fail(breaker, 1, 3)
    fail(breaker, 2, 3)
    breaker.reset(1)
    assert breaker.can_execute(1)
    assert not breaker.can_execute(2)
    breaker.reset_all()
    assert breaker.stats()["total"] == 0


def test_cleanup_stale_resets_long_open_breakers(breaker, clock):
    fail(breaker, 1, 3)
    clock.advance(300)
    fail(breaker, 2, 3)
    clock.advance(400)
    assert breaker.cleanup_stale(600) == 1
    assert breaker.get_state(1) == CLOSED
    assert breaker.get_state(2) == OPEN


def test_stats_and_all_states(breaker, clock):
    breaker.record_success(1)
    fail(breaker, 2, 3)
    fail(breaker, 3, 3)
    clock.advance(61)
    breaker.can_execute(3)

    assert breaker.stats() == {"total": 3, "open": 1, "half_open": 1, "closed": 1}
    states = {item["entity_id"]: item for item in breaker.all_states()}
    assert states[2]["state"] == OPEN
    assert states[2]["failures"] == 3
    assert states[1]["seconds_since_failure"] is None


def test_reading_state_does_not_track_entity(breaker):
    assert breaker.get_state(7) == CLOSED
    assert breaker.failures(7) == 0
    assert breaker.stats()["total"] == 0
    assert breaker.all_states() == []
