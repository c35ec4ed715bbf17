"""
兩條 lane 同時搶同一個資源

使用檔案型 SQLite（每個執行緒有自己的連線），SQLite 會忽略 FOR UPDATE / SKIP LOCKED，
所以這裡驗證的是條件式 UPDATE 與 partial unique index 本身的保證。
"""
import threading

import pytest
from sqlalchemy import create_engine

from database import Base
from models import (
    Actor,
    CheckinBlock,
    LaneSession,
    OPEN_SESSION_STATUSES,
    RentalTier,
    Resource,
    ResourceKind,
    ResourceStatus,
)
from core.agreement_manager import AgreementManager
from core.exceptions import LaneEngineException, NoAvailableResources, ResourceAlreadyAssigned
from core.lane_session_manager import LaneSessionManager
from core.resource_allocator import ResourceAllocator, ensure_not_held_elsewhere
from core.selection_manager import SelectionManager
from conftest import SIGNATURE

LANES = ("lane-1", "lane-2")


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lanes.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def _wait_once(barrier):
    """回傳一個只在每個執行緒第一次呼叫時等 barrier 的函式"""
    waited = threading.local()

    def wait():
        if not getattr(waited, "done", False):
            waited.done = True
            barrier.wait(timeout=10)

    return wait


def _race(db, session_factory, call):
    # 主執行緒的 session 先放掉連線
    db.close()
    results = {}

    def run(lane_id):
        db = session_factory()
        try:
            results[lane_id] = ("ok", call(db, lane_id))
        except LaneEngineException as e:
            results[lane_id] = ("error", e)
        finally:
            db.close()

    threads = [threading.Thread(target=run, args=(lane_id,)) for lane_id in LANES]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert set(results) == set(LANES)
    return results


@pytest.fixture
def both_picked(monkeypatch):
    """兩條 lane 都挑好資源之後才開始寫入"""
    wait = _wait_once(threading.Barrier(len(LANES)))
    original = ResourceAllocator.select_for_new_checkin

    def select_then_wait(db, tier):
        resource = original(db, tier)
        wait()
        return resource

    monkeypatch.setattr(ResourceAllocator, "select_for_new_checkin", staticmethod(select_then_wait))


def _sign(db, lane_id):
    _, _, resource = AgreementManager.sign_agreement(db, lane_id, SIGNATURE)
    return resource.number


def test_concurrent_signing_commits_last_room_once(db, session_factory, make_customer, make_resource,
                                                   paid_session, both_picked):
    room_id = make_resource("101", tier=RentalTier.STANDARD).id
    customer_ids = {}
    for lane_id in LANES:
        customer = make_customer(name=lane_id)
        customer_ids[lane_id] = customer.id
        paid_session(lane_id, customer)

    results = _race(db, session_factory, _sign)

    winners = [lane_id for lane_id, (outcome, _) in results.items() if outcome == "ok"]
    assert len(winners) == 1
    loser = next(lane_id for lane_id in LANES if lane_id not in winners)
    assert isinstance(results[loser][1], NoAvailableResources)

    db.expire_all()
    assert db.query(CheckinBlock).filter(CheckinBlock.resource_id == room_id).count() == 1
    stored = db.get(Resource, room_id)
    assert stored.status == ResourceStatus.OCCUPIED
    assert stored.assigned_customer_id == customer_ids[winners[0]]
    assert db.query(LaneSession).filter(LaneSession.lane_id == loser).one().status in OPEN_SESSION_STATUSES


def test_losing_lane_selects_next_room(db, session_factory, make_customer, make_resource,
                                       paid_session, both_picked):
    make_resource("101", tier=RentalTier.STANDARD)
    make_resource("102", tier=RentalTier.STANDARD)
    for lane_id in LANES:
        paid_session(lane_id, make_customer(name=lane_id))

    results = _race(db, session_factory, _sign)

    assert sorted(number for _, number in results.values()) == ["101", "102"]
    assert all(outcome == "ok" for outcome, _ in results.values())

    db.expire_all()
    assert db.query(CheckinBlock).count() == 2


def test_concurrent_tentative_assign_holds_room_once(db, session_factory, make_customer, make_resource,
                                                    monkeypatch):
    room_id = make_resource("101", tier=RentalTier.STANDARD).id
    for lane_id in LANES:
        LaneSessionManager.start_session(db, lane_id, customer_id=make_customer(name=lane_id).id)
        SelectionManager.propose_selection(db, lane_id, RentalTier.STANDARD, Actor.EMPLOYEE)
        SelectionManager.confirm_selection(db, lane_id, Actor.EMPLOYEE)

    # 兩條 lane 都通過「沒被其他 lane 持有」的檢查之後才寫入
    wait = _wait_once(threading.Barrier(len(LANES)))

    def check_then_wait(db, resource, session_id):
        ensure_not_held_elsewhere(db, resource, session_id)
        wait()

    monkeypatch.setattr("core.resource_allocator.ensure_not_held_elsewhere", check_then_wait)

    def assign(db, lane_id):
        ResourceAllocator.assign_resource(db, lane_id, ResourceKind.ROOM, room_id)
        return lane_id

    results = _race(db, session_factory, assign)

    outcomes = sorted(outcome for outcome, _ in results.values())
    assert outcomes == ["error", "ok"]
    error = next(value for outcome, value in results.values() if outcome == "error")
    assert isinstance(error, ResourceAlreadyAssigned)

    db.expire_all()
    holders = db.query(LaneSession).filter(
        LaneSession.assigned_resource_id == room_id,
        LaneSession.status.in_(OPEN_SESSION_STATUSES)
    ).count()
    assert holders == 1
    assert db.get(Resource, room_id).status == ResourceStatus.CLEAN
