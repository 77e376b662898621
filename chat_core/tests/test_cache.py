from chat_core.chat.cache import ConversationCache
from chat_core.domain.models import Message


def test_get_miss_then_put_hit_returns_copy():
    cache = ConversationCache(max_entries=4)
    assert cache.get("c1") is None

    m = Message.create("user", "hi", conversation_id="c1")
    cache.put("c1", [m])
    got = cache.get("c1")
    assert got == [m]

    got.append(Message.create("assistant", "mutated"))
    assert len(cache.get("c1")) == 1


def test_append_only_to_cached_entries():
    cache = ConversationCache(max_entries=4)
    assert cache.append("c1", Message.create("user", "lost")) is False
    assert "c1" not in cache

    cache.put("c1", [])
    assert cache.append("c1", Message.create("user", "kept")) is True
    assert [m.content for m in cache.get("c1")] == ["kept"]


def test_lru_eviction_respects_recent_use():
    cache = ConversationCache(max_entries=2)
    cache.put("a", [])
    cache.put("b", [])
    cache.get("a")
    cache.put("c", [])

    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_zero_means_unbounded_and_clear_empties():
    cache = ConversationCache(max_entries=0)
    for i in range(50):
        cache.put(f"c{i}", [])
    assert len(cache) == 50

    cache.evict("c0")
    assert "c0" not in cache
    cache.clear()
    assert cache.get("c1") is None
    assert len(cache) == 0
