import threading
import time
from decimal import Decimal

from backend.app.core.error_catalog import InsufficientStockError, ValidationError
from backend.services.dispatch import (
    DispatchFilters,
    DispatchRequestLine,
    dispatch_order,
    list_dispatches,
    order_fulfillment,
)
from backend.services.locking import KeyedLocks
from backend.services.specs import ProductSpec
from backend.services.stock_ledger import StockLedger

S = ProductSpec.of("square-tubes", "50x50", "2.5")


def test_concurrent_dispatches_never_oversell(db_session, session_factory, make_stock, make_order):
    make_stock(S, 100)
    order_ids = [make_order((S, 60)).id for _ in range(4)]

    barrier = threading.Barrier(len(order_ids))
    outcomes: list[str] = []

    def worker(order_id):
        db = session_factory()
        try:
            barrier.wait()
            dispatch_order(db, order_id, [DispatchRequestLine(spec=S, quantity=Decimal("60"))])
            outcomes.append("ok")
        except InsufficientStockError:
            outcomes.append("short")
        except Exception as exc:  # surfaced through the assertion below
            outcomes.append(repr(exc))
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(oid,)) for oid in order_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["ok", "short", "short", "short"]
    db_session.expire_all()
    assert StockLedger(db_session).get_available(S) == Decimal("40.00")

    primaries = list_dispatches(db_session, DispatchFilters(auto_generated=False))
    assert len(primaries) == 1
    assert sum(line.dispatched_quantity for line in primaries[0].lines) == Decimal("60.00")


def test_keyed_locks_are_reentrant_and_independent():
    locks = KeyedLocks("test")
    entered = threading.Event()

    def other_key():
        with locks.hold("b"):
            entered.set()

    with locks.hold("a", "b"):
        with locks.hold("a"):  # re-entrant for the same thread
            t = threading.Thread(target=other_key)
            t.start()
            time.sleep(0.05)
            assert not entered.is_set()

    t.join(timeout=5)
    assert entered.is_set()

    entered.clear()
    with locks.hold("a"):
        t = threading.Thread(target=other_key)
        t.start()
        t.join(timeout=5)
        assert entered.is_set()


def test_concurrent_dispatches_on_one_order_never_exceed_ordered(db_session, session_factory, make_stock, make_order):
    make_stock(S, 500)
    order = make_order((S, 100), approved=True)

    barrier = threading.Barrier(4)
    outcomes: list[str] = []

    def worker():
        db = session_factory()
        try:
            barrier.wait()
            dispatch_order(db, order.id, [DispatchRequestLine(spec=S, quantity=Decimal("60"))])
            outcomes.append("ok")
        except ValidationError:
            outcomes.append("over")
        except Exception as exc:  # surfaced through the assertion below
            outcomes.append(repr(exc))
        finally:
            db.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["ok", "over", "over", "over"]
    db_session.expire_all()
    assert order_fulfillment(db_session, order.id)[S].dispatched == Decimal("60.00")
    assert StockLedger(db_session).get_available(S) == Decimal("440.00")


def test_keyed_locks_forget_released_keys():
    locks = KeyedLocks("test")
    waiting = threading.Event()
    done = threading.Event()

    def contender():
        waiting.set()
        with locks.hold("a"):
            done.set()

    with locks.hold("a", "b"):
        with locks.hold("a"):
            assert len(locks) == 2
        t = threading.Thread(target=contender)
        t.start()
        waiting.wait(timeout=5)
        time.sleep(0.05)
        assert len(locks) == 2

    t.join(timeout=5)
    assert done.is_set()
    assert len(locks) == 0

    for n in range(100):
        with locks.hold(f"order:{n}"):
            pass
    assert len(locks) == 0
