"""End-to-end tests for the application context against a mocked OpenRouter."""

import pytest

from llmchat.engine.history import SessionNotFoundError
from llmchat.engine.prompts import DEFAULT_TITLE_MODEL
from llmchat.main import ChatApp


@pytest.fixture
def app(repository, client, openrouter):
    openrouter.models = [{"id": "test/model", "created": 1}]
    chat = ChatApp(repository=repository, client=client)
    chat.settings.load()
    chat.settings.change_api_key("sk-test")
    chat.catalog.select("test/model")
    return chat


async def say(app, text):
    app.change_input(text)
    await app.send()
    await app.drain()


class TestStartup:

    @pytest.mark.asyncio
    async def test_start_on_empty_store(self, repository, client, openrouter):
        openrouter.models = [{"id": "a/model", "created": 2}, {"id": "b/model", "created": 5}]
        app = ChatApp(repository=repository, client=client)
        await app.start()
        assert app.history.index == []
        assert app.history.is_loading_index is False
        assert app.catalog.selected_model_id == "b/model"
        assert app.settings.loaded

    @pytest.mark.asyncio
    async def test_start_without_network_fetch(self, repository, client, openrouter):
        app = ChatApp(repository=repository, client=client)
        await app.start(fetch_models=False)
        assert openrouter.requests == []


class TestSendFlow:

    @pytest.mark.asyncio
    async def test_no_credential(self, app, openrouter):
        app.change_credential("")
        await say(app, "Hello")
        assert [m.content for m in app.state.messages] == ["Hello"]
        assert openrouter.requests == []
        assert app.credential_prompt_open
        assert app.state.error is None

    @pytest.mark.asyncio
    async def test_setting_credential_closes_prompt(self, app):
        app.change_credential("")
        await say(app, "Hello")
        app.change_credential("sk-new")
        assert not app.credential_prompt_open

    @pytest.mark.asyncio
    async def test_round_trip(self, app, openrouter, reply_body):
        openrouter.replies.append((200, reply_body("Hi! How can I help?", total_tokens=42)))
        await say(app, "Hello")
        assert app.state.total_tokens == 42
        assert [m.role for m in app.state.messages] == ["user", "assistant"]
        assert app.state.messages[-1].content == "Hi! How can I help?"
        assert not app.state.is_generating

        stored = app.repository.get(app.history.current_session_id)
        assert len(stored.messages) == 2
        assert stored.total_tokens == 42
        assert stored.settings.model == "test/model"

    @pytest.mark.asyncio
    async def test_system_prompt_sent(self, app, openrouter):
        app.change_system_prompt("Answer in French.")
        await say(app, "Hello")
        body = openrouter.bodies("test/model")[0]
        assert body["messages"][0] == {"role": "system", "content": "Answer in French."}

    @pytest.mark.asyncio
    async def test_api_error_surfaces(self, app, openrouter):
        openrouter.replies.append((402, {"error": {"message": "Insufficient credits"}}))
        await say(app, "Hello")
        assert app.state.error == "API Error (402): Insufficient credits"
        assert len(app.state.messages) == 1

    @pytest.mark.asyncio
    async def test_busy_second_send(self, app, openrouter):
        app.change_input("one")
        await app.send()
        app.change_input("two")
        await app.send()
        await app.drain()
        assert [m.content for m in app.state.messages if m.role == "user"] == ["one"]
        assert app.state.input_text == "two"


class TestAutoTitle:

    @pytest.mark.asyncio
    async def test_titled_once(self, app, openrouter):
        await say(app, "How do Python generators work?")
        assert len(openrouter.bodies(DEFAULT_TITLE_MODEL)) == 1
        assert app.history.index[0].title == "Python Generators"

        await say(app, "And coroutines?")
        await say(app, "Thanks")
        assert len(openrouter.bodies(DEFAULT_TITLE_MODEL)) == 1

    @pytest.mark.asyncio
    async def test_titled_after_retry_of_unanswered_message(self, app, openrouter):
        app.change_credential("")
        await say(app, "Hello")
        assert app.credential_prompt_open is True

        app.change_credential("sk-test")
        await app.retry(app.state.messages[0])
        await app.drain()

        assert [(m.role, m.content) for m in app.state.messages] == [("user", "Hello"), ("assistant", "Hi there!")]
        assert len(openrouter.bodies(DEFAULT_TITLE_MODEL)) == 1
        assert app.history.index[0].title == "Python Generators"

    @pytest.mark.asyncio
    async def test_regenerate(self, app, openrouter):
        await say(app, "Hello")
        await say(app, "More")
        openrouter.title_reply = "Greetings Exchange"
        entry = await app.regenerate_title()
        assert entry.title == "Greetings Exchange"
        assert len(openrouter.bodies(DEFAULT_TITLE_MODEL)) == 2


class TestEditsAndDeletes:

    @pytest.mark.asyncio
    async def test_edit_persists(self, app):
        await say(app, "Helo")
        user_id = app.state.messages[0].id
        await app.edit_message(user_id, "Hello")
        stored = app.repository.get(app.history.current_session_id).messages[0]
        assert stored.content == "Hello"
        assert stored.original_content == "Helo"

    @pytest.mark.asyncio
    async def test_delete_sole_message_not_saved(self, app, openrouter):
        app.change_credential("")
        await say(app, "only message")
        session_id = app.history.current_session_id
        before = app.repository.get(session_id)

        await app.delete_message(app.state.messages[0].id)
        assert app.state.messages == []
        after = app.repository.get(session_id)
        assert after.last_modified == before.last_modified
        assert [m.content for m in after.messages] == ["only message"]

    @pytest.mark.asyncio
    async def test_retry_assistant(self, app, openrouter, reply_body):
        await say(app, "Hello")
        openrouter.replies.append((200, reply_body("Second try")))
        await app.retry(app.state.messages[1])
        await app.drain()
        assert [m.content for m in app.state.messages] == ["Hello", "Second try"]
        stored = app.repository.get(app.history.current_session_id)
        assert stored.messages[1].content == "Second try"


class TestSessions:

    @pytest.mark.asyncio
    async def test_new_chat_ignores_late_reply(self, app, openrouter):
        app.change_input("slow question")
        await app.send()
        app.new_session()
        await app.drain()
        assert app.state.messages == []
        assert app.state.total_tokens == 0
        assert app.history.current_session_id is None
        [entry] = app.history.index
        assert len(app.repository.get(entry.id).messages) == 1
        assert openrouter.bodies(DEFAULT_TITLE_MODEL) == []

    @pytest.mark.asyncio
    async def test_select_restores_session(self, app):
        app.change_temperature(0.2)
        app.change_system_prompt("Be terse.")
        await say(app, "first chat")
        first_id = app.history.current_session_id
        tokens = app.state.total_tokens

        app.new_session()
        app.change_temperature(1.0)
        app.change_system_prompt("")
        await say(app, "second chat")

        session = await app.select_session(first_id)
        assert session.id == first_id
        assert [m.content for m in app.state.messages][0] == "first chat"
        assert app.state.total_tokens == tokens
        assert app.settings.settings.temperature == 0.2
        assert app.settings.settings.system_prompt == "Be terse."

    @pytest.mark.asyncio
    async def test_delete_current_resets_chat(self, app):
        await say(app, "doomed")
        await app.delete_session(app.history.current_session_id)
        assert app.state.messages == []
        assert app.history.current_session_id is None
        assert app.history.index == []

    @pytest.mark.asyncio
    async def test_duplicate_selects_clone(self, app):
        await say(app, "original")
        source_id = app.history.current_session_id
        clone = await app.duplicate_session(source_id)
        assert app.history.current_session_id == clone.id
        assert clone.title.endswith(" (Copy)")
        assert [m.content for m in app.state.messages] == [m.content for m in clone.messages]

    @pytest.mark.asyncio
    async def test_duplicate_missing(self, app):
        with pytest.raises(SessionNotFoundError):
            await app.duplicate_session("nope")

    @pytest.mark.asyncio
    async def test_rename(self, app):
        await say(app, "hi")
        entry = await app.rename_session(app.history.current_session_id, "Renamed")
        assert app.history.index[0] == entry

    @pytest.mark.asyncio
    async def test_independent_apps(self, repository, client):
        first = ChatApp(repository=repository, client=client)
        second = ChatApp(repository=repository, client=client)
        first.change_input("only in first")
        assert second.state.input_text == ""
