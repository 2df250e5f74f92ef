import asyncio

import pytest

from conftest import ConnectionFactory, FakeConnection, allow_all, make_config
from nexus_mcp.mcp.external.errors import ProviderError
from nexus_mcp.mcp.external.models import ProviderStatus
from nexus_mcp.mcp.external.registry import ProviderRegistry, split_name, stringify_prompt_arguments


def build(settings, factory=None, credential_check=allow_all):
    return ProviderRegistry(
        settings,
        credential_check=credential_check,
        connection_factory=factory or ConnectionFactory(),
    )


class TestRouting:
    def test_split_at_first_delimiter(self):
        assert split_name("github_create_issue", "_") == ("github", "create_issue")
        assert split_name("gitlab:repo://group/project", ":") == ("gitlab", "repo://group/project")

    @pytest.mark.asyncio
    async def test_call_tool_strips_prefix(self, settings):
        factory = ConnectionFactory()
        registry = build(settings, factory)
        await registry.initialize_all([make_config("github")])

        result = await registry.call_tool("github_create_issue", {"title": "Bug"})

        assert result == {"tool": "create_issue", "arguments": {"title": "Bug"}}
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_read_resource_strips_prefix(self, settings):
        factory = ConnectionFactory()
        registry = build(settings, factory)
        await registry.initialize_all([make_config("gitlab")])

        await registry.read_resource("gitlab:repo://nexus/readme")

        assert factory.created["gitlab"][0].calls == [("resource", "repo://nexus/readme")]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_get_prompt_stringifies_arguments(self, settings):
        factory = ConnectionFactory()
        registry = build(settings, factory)
        await registry.initialize_all([make_config("azure")])

        await registry.get_prompt("azure_summarize", {"count": 3, "draft": False, "labels": ["a", "b"], "none": None})

        assert factory.created["azure"][0].calls == [
            ("prompt", "summarize", {"count": "3", "draft": "false", "labels": '["a","b"]', "none": ""}),
        ]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_provider(self, settings):
        registry = build(settings)
        with pytest.raises(ProviderError, match="Provider jira not found") as exc:
            await registry.call_tool("jira_create", {})
        assert exc.value.code == "not_found"

    @pytest.mark.asyncio
    async def test_unavailable_provider(self, settings):
        factory = ConnectionFactory({"github": [FakeConnection(connect_error=RuntimeError("Bad credentials"))]})
        registry = build(settings, factory)
        await registry.initialize_all([make_config("github")])

        with pytest.raises(ProviderError, match=r"Provider github not available \(status: auth_failed\)"):
            await registry.read_resource("github:repo://x")

    @pytest.mark.asyncio
    async def test_downstream_errors_propagate(self, settings):
        registry = build(settings)
        await registry.initialize_all([make_config("github")])

        with pytest.raises(RuntimeError, match="tool exploded"):
            await registry.call_tool("github_explode", {})
        assert registry.get_provider("github").status is ProviderStatus.CONNECTED
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_call_is_queued_while_updating(self, settings):
        registry = build(settings)
        await registry.initialize_all([make_config("github")])
        await registry.set_provider_updating("github", True)

        pending = asyncio.ensure_future(registry.call_tool("github_create_issue", {"n": 1}))
        await asyncio.sleep(0)
        assert not pending.done()

        await registry.set_provider_updating("github", False)
        assert await pending == {"tool": "create_issue", "arguments": {"n": 1}}
        await registry.shutdown()


def test_stringify_prompt_arguments():
    assert stringify_prompt_arguments(None) is None
    assert stringify_prompt_arguments({"a": "x", "b": True, "c": 1.5, "d": {"k": 1}}) == {
        "a": "x",
        "b": "true",
        "c": "1.5",
        "d": '{"k":1}',
    }


class TestAggregation:
    @pytest.mark.asyncio
    async def test_only_connected_providers_contribute(self, settings):
        factory = ConnectionFactory({"broken": [FakeConnection(connect_error=ConnectionError("network down"))]})
        registry = build(settings, factory)
        await registry.initialize_all([make_config("good"), make_config("broken")])

        # stale capabilities left on an errored provider must not leak
        registry.get_provider("broken").state.tools.add("broken_t", {"name": "broken_t"})

        tools = registry.get_all_tools()
        assert [tool["name"] for tool in tools] == ["good_create_issue"]
        assert [r["uri"] for r in registry.get_all_resources()] == ["good:repo://nexus/readme"]
        assert [p["name"] for p in registry.get_all_prompts()] == ["good_summarize"]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_all_tolerates_failures(self, settings):
        factory = ConnectionFactory({"b": [FakeConnection(connect_error=RuntimeError("404 not found"))]})
        registry = build(settings, factory)

        statuses = await registry.initialize_all([make_config("a"), make_config("b"), make_config("c", enabled=False)])

        assert statuses == {"a": ProviderStatus.CONNECTED, "b": ProviderStatus.ERROR}
        assert registry.get_provider("c") is None
        await registry.shutdown()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_reload_unknown_provider(self, settings):
        registry = build(settings)
        with pytest.raises(ProviderError, match="Provider nope not found"):
            await registry.reload_provider("nope")

    @pytest.mark.asyncio
    async def test_reload_known_provider(self, settings):
        factory = ConnectionFactory()
        registry = build(settings, factory)
        await registry.initialize_all([make_config("github")])
        supervisor = registry.get_provider("github")
        supervisor.state.reconnect.attempt_count = 2

        status = await registry.reload_provider("github")

        assert status is ProviderStatus.CONNECTED
        assert supervisor.state.reconnect.attempt_count == 0
        assert supervisor.state.reconnect.last_attempt_time is None
        assert factory.created["github"][0].close_calls == 1
        assert len(factory.created["github"]) == 2
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_restart_all(self, settings):
        factory = ConnectionFactory({"b": [FakeConnection(), FakeConnection(connect_error=RuntimeError("forbidden"))]})
        registry = build(settings, factory)
        await registry.initialize_all([make_config("a"), make_config("b")])

        assert await registry.restart_all_providers() == {"a": True, "b": False}
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_handle_provider_failure_never_raises(self, settings):
        registry = build(settings)
        await registry.initialize_all([make_config("github")])

        registry.handle_provider_failure("unknown")
        registry.handle_provider_failure("github", RuntimeError("socket hang up"))

        assert registry.get_provider("github").status is ProviderStatus.ERROR
        assert registry.scheduler.pending("github") is not None
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers_and_rejects_queue(self, settings):
        factory = ConnectionFactory({"b": [FakeConnection(connect_error=ConnectionError("network down"))]})
        registry = build(settings, factory)
        await registry.initialize_all([make_config("a"), make_config("b")])
        await registry.set_provider_updating("a", True)
        pending = asyncio.ensure_future(registry.call_tool("a_create_issue", {}))
        await asyncio.sleep(0)

        await registry.shutdown()

        assert registry.scheduler.pending_count == 0
        assert registry.get_all_providers() == []
        with pytest.raises(ProviderError, match="Provider a is shutting down"):
            await pending

    @pytest.mark.asyncio
    async def test_status_report(self, settings, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        registry = build(settings)
        await registry.initialize_all([make_config("a")])

        report = registry.status_report()

        provider = report["providers"][0]
        assert provider["id"] == "a"
        assert provider["status"] == "connected"
        assert provider["tools"] == 1
        assert provider["reconnectAttempts"] == 0
        assert "github" in report["missingTokens"]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_auto_update_publishes_checks(self, settings):
        registry = build(settings)
        received = []
        registry.events.subscribe(lambda event: received.append((event.kind, event.provider_id)))
        await registry.initialize_all([make_config("a", auto_update=True), make_config("b")])

        registry.start_auto_update(10)
        await asyncio.sleep(0.035)
        registry.stop_auto_update()
        await registry.events.flush()

        checks = [item for item in received if item[0] == "update_check"]
        assert checks
        assert set(checks) == {("update_check", "a")}
        await registry.shutdown()
