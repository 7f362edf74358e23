from __future__ import annotations

import gc
import threading

from caseflow.locks import CaseLocks
from caseflow.schemas import Phase, TransitionRequest, UserRole


class TestCaseLocks:
    def test_same_lock_while_in_use(self):
        locks = CaseLocks()
        with locks.hold("case-1"):
            assert locks.get("case-1") is locks.get("case-1")
            assert locks.get("case-1") is not locks.get("case-2")

    def test_reentrant(self):
        locks = CaseLocks()
        with locks.hold("case-1"), locks.hold("case-1"):
            assert len(locks) == 1

    def test_other_threads_wait(self):
        locks = CaseLocks()
        acquired = []

        def contend():
            acquired.append(locks.get("case-1").acquire(blocking=False))

        with locks.hold("case-1"):
            thread = threading.Thread(target=contend)
            thread.start()
            thread.join()

        assert acquired == [False]

    def test_released_locks_are_dropped(self):
        locks = CaseLocks()
        for n in range(100):
            with locks.hold(f"case-{n}"):
                pass
        gc.collect()

        assert len(locks) == 0


def test_unknown_case_ids_do_not_accumulate(service):
    for n in range(50):
        result = service.request_transition(TransitionRequest(
            case_id=f"missing-{n}",
            target_phase=Phase.PRE_PROCEEDING_PREPARATION,
            actor_id="u-attorney",
            actor_role=UserRole.ATTORNEY,
        ))
        assert not result.success
    gc.collect()

    assert len(service.lifecycle.locks) == 0
