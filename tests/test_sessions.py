import re
import threading
from concurrent.futures import ThreadPoolExecutor

from app.services.sessions import SessionStatus, WeChatUserInfo

HEX32 = re.compile(r"[0-9a-f]{32}")
SCENE = re.compile(r"login_(\d+)_[0-9a-f]{16}")


def test_create_session_fields(store, clock):
    s = store.create()

    assert HEX32.fullmatch(s.login_token)
    assert HEX32.fullmatch(s.auth_code)
    assert s.auth_code != s.login_token
    match = SCENE.fullmatch(s.scene_id)
    assert match and int(match.group(1)) == int(clock.now)

    assert s.status == SessionStatus.PENDING
    assert s.wechat_id == ""
    assert s.user_info is None
    assert s.created_at == clock.now
    assert s.expired_at == clock.now + 600
    assert store.active_session_count() == 1


def test_lookup_by_token_and_scene_returns_same_session(store):
    s = store.create()

    assert store.get(s.login_token) == s
    assert store.get_by_scene(s.scene_id) == s
    assert store.get("missing") is None
    assert store.get_by_scene("login_0_0000000000000000") is None


def test_returned_session_is_a_snapshot(store):
    s = store.create()
    s.status = SessionStatus.SUCCESS
    s.wechat_id = "tampered"

    fresh = store.get(s.login_token)
    assert fresh.status == SessionStatus.PENDING
    assert fresh.wechat_id == ""


def test_expired_session_is_invisible_without_sweep(store, clock):
    s = store.create()

    clock.advance(600)
    # still visible exactly at expired_at
    assert store.get(s.login_token) is not None

    clock.advance(1)
    assert store.get(s.login_token) is None
    assert store.active_session_count() == 0
    assert s.scene_id not in store._scenes


def test_expired_session_is_invisible_by_scene(store, clock):
    s = store.create()
    clock.advance(601)

    assert store.get_by_scene(s.scene_id) is None
    assert store.active_session_count() == 0
    assert s.scene_id not in store._scenes


def test_dangling_scene_entry_is_evicted(store):
    s = store.create()
    del store._sessions[s.login_token]

    assert store.get_by_scene(s.scene_id) is None
    assert s.scene_id not in store._scenes


def test_update_by_scene_marks_success(store):
    s = store.create()
    info = WeChatUserInfo(openid="oUser123")

    assert store.update_by_scene(s.scene_id, "oUser123", info) is True

    updated = store.get(s.login_token)
    assert updated.status == SessionStatus.SUCCESS
    assert updated.wechat_id == "oUser123"
    assert updated.user_info == info
    assert updated.auth_code == s.auth_code
    assert updated.expired_at == s.expired_at


def test_update_again_after_success_overwrites(store):
    s = store.create()
    store.update_by_scene(s.scene_id, "oFirst", WeChatUserInfo(openid="oFirst"))

    assert store.update_by_scene(s.scene_id, "oSecond", WeChatUserInfo(openid="oSecond")) is True
    assert store.get(s.login_token).wechat_id == "oSecond"


def test_update_unknown_scene_fails_and_leaves_others_alone(store):
    s2 = store.create()

    assert store.update_by_scene("nonexistent-scene", "oUser", WeChatUserInfo(openid="oUser")) is False
    assert store.get(s2.login_token) == s2


def test_update_expired_scene_fails(store, clock):
    s = store.create()
    clock.advance(601)

    assert store.update_by_scene(s.scene_id, "oUser", WeChatUserInfo(openid="oUser")) is False
    assert store.active_session_count() == 0


def test_find_by_auth_code_only_after_success(store, clock):
    s = store.create()
    assert store.find_wechat_id_by_auth_code(s.auth_code) is None

    store.update_by_scene(s.scene_id, "oUser", WeChatUserInfo(openid="oUser"))
    assert store.find_wechat_id_by_auth_code(s.auth_code) == "oUser"
    assert store.find_wechat_id_by_auth_code(s.login_token) is None
    assert store.find_wechat_id_by_auth_code("") is None

    clock.advance(601)
    assert store.find_wechat_id_by_auth_code(s.auth_code) is None


def test_sweep_removes_only_expired(store, clock):
    old = [store.create() for _ in range(3)]
    clock.advance(300)
    young = [store.create() for _ in range(2)]
    internal = store._sessions[old[0].login_token]
    clock.advance(301)

    assert store.sweep_expired() == 3
    assert store.active_session_count() == 2
    assert internal.status == SessionStatus.EXPIRED
    assert set(store._scenes.values()) == {s.login_token for s in young}
    for s in young:
        assert store.get(s.login_token) == s


def test_login_scenario(store, clock):
    s1 = store.create()

    clock.advance(5 * 60)
    assert store.get(s1.login_token).status == SessionStatus.PENDING
    assert store.update_by_scene(s1.scene_id, "oScanner", WeChatUserInfo(openid="oScanner")) is True
    assert store.get(s1.login_token).status == SessionStatus.SUCCESS

    clock.advance(6 * 60)
    assert store.get(s1.login_token) is None


def test_concurrent_creates_never_collide(store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        sessions = list(pool.map(lambda _: store.create(), range(1000)))

    assert len({s.login_token for s in sessions}) == 1000
    assert len({s.scene_id for s in sessions}) == 1000
    assert len({s.auth_code for s in sessions}) == 1000
    assert store.active_session_count() == 1000
    assert len(store._scenes) == 1000


def test_concurrent_reads_during_update(store):
    s = store.create()
    errors = []
    stop = threading.Event()

    def poll():
        while not stop.is_set():
            seen = store.get(s.login_token)
            if seen is None or seen.status not in (SessionStatus.PENDING, SessionStatus.SUCCESS):
                errors.append(seen)
            if seen is not None and seen.status == SessionStatus.SUCCESS and seen.wechat_id != "oUser":
                errors.append(seen)

    threads = [threading.Thread(target=poll) for _ in range(4)]
    for t in threads:
        t.start()
    assert store.update_by_scene(s.scene_id, "oUser", WeChatUserInfo(openid="oUser"))
    stop.set()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert store.get(s.login_token).status == SessionStatus.SUCCESS


def test_auth_code_lookup_evicts_expired_sessions(store, clock):
    s = store.create()
    store.update_by_scene(s.scene_id, "oUser", WeChatUserInfo(openid="oUser"))
    clock.advance(601)

    assert store.find_wechat_id_by_auth_code(s.auth_code) is None
    assert store.active_session_count() == 0
    assert store._scenes == {}


def test_discard_removes_both_index_entries(store):
    s = store.create()
    other = store.create()

    assert store.discard(s.login_token) is True
    assert store.get(s.login_token) is None
    assert store.get_by_scene(s.scene_id) is None
    assert s.scene_id not in store._scenes
    assert store.get(other.login_token) == other

    assert store.discard(s.login_token) is False
