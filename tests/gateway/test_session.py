"""Tests for gateway/session.py: session keys and the durable session index."""

import json

from gateway.config import Platform
from gateway.session import SessionSource, SessionStore, build_session_key


class TestSessionKey:
    def test_direct_messages_share_main(self):
        source = SessionSource(platform=Platform.TELEGRAM, chat_id="1", chat_type="direct")
        assert build_session_key(source) == "main"
        assert build_session_key(source, main_key="home") == "home"

    def test_groups_get_their_own(self):
        source = SessionSource(platform=Platform.DISCORD, chat_id="123", chat_type="group")
        assert build_session_key(source) == "discord:group:123"

    def test_description(self):
        source = SessionSource(
            platform=Platform.DISCORD, chat_id="1", chat_name="#general",
            chat_type="group", space_name="My Server",
        )
        assert source.description == "group: #general, server: My Server"


class TestSessionStore:
    def test_get_or_create_is_stable(self, tmp_path):
        store = SessionStore(tmp_path)
        first = store.get_or_create_session("main")
        second = store.get_or_create_session("main")
        assert first.session_id == second.session_id

    def test_persisted(self, tmp_path):
        source = SessionSource(platform=Platform.DISCORD, chat_id="9", chat_name="#dev", chat_type="group")
        store = SessionStore(tmp_path)
        entry = store.get_or_create_session("discord:group:9", source)

        data = json.loads((tmp_path / "sessions.json").read_text())
        assert data["discord:group:9"]["session_id"] == entry.session_id

        reloaded = SessionStore(tmp_path).get_or_create_session("discord:group:9")
        assert reloaded.session_id == entry.session_id
        assert reloaded.origin.chat_name == "#dev"
        assert reloaded.platform == Platform.DISCORD

    def test_last_route(self, tmp_path):
        store = SessionStore(tmp_path)
        assert store.get_last_route("main") is None

        store.update_last_route("main", Platform.TELEGRAM, "user:42")
        store.update_last_route("main", Platform.DISCORD, "user:7")

        route = SessionStore(tmp_path).get_last_route("main")
        assert route.channel == Platform.DISCORD
        assert route.to == "user:7"

    def test_corrupt_index_is_ignored(self, tmp_path):
        (tmp_path / "sessions.json").write_text("{not json", encoding="utf-8")
        store = SessionStore(tmp_path)
        assert store.list_sessions() == []

    def test_list_sessions(self, tmp_path):
        store = SessionStore(tmp_path)
        store.get_or_create_session("a")
        store.get_or_create_session("b")
        assert {e.session_key for e in store.list_sessions()} == {"a", "b"}
        assert len(store.list_sessions(active_minutes=5)) == 2
