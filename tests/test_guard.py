from nodepulse.utils.guard import NonReentrantGuard


def test_second_acquire_is_rejected_and_counted():
    guard = NonReentrantGuard("test")
    assert guard.try_acquire()
    assert guard.busy
    assert not guard.try_acquire()
    assert not guard.try_acquire()
    assert guard.skipped == 2

    guard.release()
    assert not guard.busy
    assert guard.try_acquire()
    assert guard.skipped == 2
