import pytest

from tether_mcp.agents.agent_loop import AgentLoop
from tether_mcp.agents.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationManager,
    ConversationMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    generate_title,
)
from tether_mcp.agents.inference import ChatMessage, InferenceError, MockProvider
from tether_mcp.config import AgentLoopSettings
from tether_mcp.storage import CONVERSATIONS_KEY


@pytest.mark.parametrize(
    "text, expected",
    [
        ("What's the weather in Oslo?", "Whats the weather in Oslo"),
        ("   hello   ", "hello"),
        ("!!!", DEFAULT_TITLE),
        ("x" * 80, "x" * 50),
    ],
)
def test_generate_title(text, expected):
    assert generate_title(text) == expected


def test_content_blocks_round_trip_through_json():
    message = ConversationMessage(
        role="assistant",
        content=[
            TextBlock(text="Let me check"),
            ToolUseBlock(id="c1", name="srv__echo", input={"a": 1}),
        ],
    )
    tool = ConversationMessage(role="tool", content=[ToolResultBlock(tool_use_id="c1", content=[{"type": "text", "text": "ok"}])])
    conversation = Conversation(messages=[message, tool])

    restored = Conversation.model_validate(conversation.model_dump(mode="json"))

    assert restored.messages[0].text == "Let me check"
    assert restored.messages[0].tool_uses[0].input == {"a": 1}
    assert restored.messages[1].tool_results[0].tool_use_id == "c1"


class TestConversationManager:
    @pytest.fixture
    def provider(self):
        return MockProvider()

    @pytest.fixture
    def manager(self, provider, store):
        return ConversationManager(AgentLoop(provider, settings=AgentLoopSettings(builtin_tools=False)), store)

    async def test_create_and_list(self, manager, store):
        first = await manager.create_conversation()
        second = await manager.create_conversation("Named")

        assert first.title == DEFAULT_TITLE
        assert {c.id for c in manager.conversations()} == {first.id, second.id}
        assert len(await store.get(CONVERSATIONS_KEY)) == 2

    async def test_first_user_message_names_conversation(self, manager):
        conversation = await manager.create_conversation()

        await manager.add_user_message(conversation.id, "Plan a trip to Rome, please!")
        await manager.add_user_message(conversation.id, "Something else")

        assert manager.get(conversation.id).title == "Plan a trip to Rome please"

    async def test_send_message_runs_the_loop(self, manager, store):
        conversation = await manager.create_conversation()

        run = await manager.send_message(conversation.id, "ping")

        stored = manager.get(conversation.id)
        assert run.phase == "complete"
        assert [m.role for m in stored.messages] == ["user", "assistant"]
        assert stored.messages[-1].text == "You said: ping"
        assert stored.status == "idle"
        persisted = (await store.get(CONVERSATIONS_KEY))[0]
        assert len(persisted["messages"]) == 2

    async def test_inference_failure_leaves_error_then_resend_clears_it(self, manager, provider):
        conversation = await manager.create_conversation()
        provider.script.append(InferenceError("provider down", "provider_error", retryable=True, status=503))

        await manager.send_message(conversation.id, "hello")
        assert manager.get(conversation.id).status == "error"
        assert manager.get(conversation.id).error == "provider down"

        provider.script.append(ChatMessage(role="assistant", content="back"))
        await manager.send_message(conversation.id, "hello again")
        assert manager.get(conversation.id).status == "idle"
        assert manager.get(conversation.id).error is None

    async def test_observers_get_copies(self, manager):
        seen = []
        unsubscribe = manager.subscribe(seen.append)
        conversation = await manager.create_conversation()
        await manager.send_message(conversation.id, "hi")
        unsubscribe()
        count = len(seen)
        await manager.add_user_message(conversation.id, "more")

        assert count > 2
        assert len(seen) == count
        seen[0].title = "changed"
        assert manager.get(conversation.id).title != "changed"

    async def test_stop_without_run(self, manager):
        conversation = await manager.create_conversation()
        assert await manager.stop(conversation.id) is False
        assert manager.loop_state(conversation.id) is None

    async def test_delete(self, manager, store):
        conversation = await manager.create_conversation()
        await manager.delete_conversation(conversation.id)

        with pytest.raises(ValueError):
            manager.get(conversation.id)
        assert await store.get(CONVERSATIONS_KEY) == []

    async def test_update_title(self, manager):
        conversation = await manager.create_conversation()
        updated = await manager.update_title(conversation.id, "  Renamed ")
        assert updated.title == "Renamed"

    async def test_load_resets_interrupted_turns(self, provider, store):
        conversation = Conversation(title="Old", status="thinking")
        await store.set(CONVERSATIONS_KEY, [conversation.model_dump(mode="json"), {"garbage": True, "messages": 5}])

        manager = ConversationManager(AgentLoop(provider), store)
        await manager.load()

        loaded = manager.conversations()
        assert len(loaded) == 1
        assert loaded[0].title == "Old"
        assert loaded[0].status == "idle"
