"""Unit tests for the middleware pipeline and its built-in stages."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from semble_core import (
    EventSystem,
    MiddlewarePipeline,
    PipelineContext,
    PipelineOptions,
    PipelineStatus,
    SembleAPIError,
    SembleError,
    SemblePermissionError,
    SembleValidationError,
    create_api_execution_middleware,
    create_context,
    execute_request,
    map_pipeline_error,
)
from semble_core.events import (
    MIDDLEWARE_REGISTERED,
    PIPELINE_COMPLETED,
    PIPELINE_COMPLETED_WITH_ERRORS,
    PIPELINE_FAILED,
    PIPELINE_MIDDLEWARE_ERROR,
    PIPELINE_STARTED,
)
from semble_core.pipeline import (
    CREDENTIALS_NAME,
    Next,
    error_mapping_middleware,
    response_processing_middleware,
)


class FakeExecution:
    """Execution handle returning fixed credentials."""

    def __init__(self, credentials: Optional[Dict[str, Any]] = None) -> None:
        self.credentials = (
            credentials if credentials is not None else {"token": "test-token"}
        )
        self.requested: List[str] = []

    def get_credentials(self, name: str) -> Optional[Dict[str, Any]]:
        self.requested.append(name)
        return self.credentials


class AsyncFakeExecution(FakeExecution):
    """Execution handle whose credentials are awaited."""

    async def get_credentials(self, name: str) -> Optional[Dict[str, Any]]:  # type: ignore[override]
        self.requested.append(name)
        return self.credentials


def make_context(**overrides: Any) -> PipelineContext:
    """Build a PipelineContext for a ``get`` on ``patient``."""
    defaults: Dict[str, Any] = {
        "execution": FakeExecution(),
        "query": "query GetPatient($id: ID!) { patient(id: $id) { id } }",
        "variables": {"id": "p-1"},
        "resource": "patient",
        "action": "get",
    }
    defaults.update(overrides)
    return create_context(**defaults)


def recorder(calls: List[str], name: str) -> Any:
    async def stage(context: PipelineContext, next_: Next) -> None:
        calls.append(name)
        await next_()

    return stage


def failing(message: str = "stage failed") -> Any:
    async def stage(context: PipelineContext, next_: Next) -> None:
        raise RuntimeError(message)

    return stage


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_sorted_by_priority(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []
        pipeline.register("late", recorder(calls, "late"), 100)
        pipeline.register("early", recorder(calls, "early"), 10)
        pipeline.register("middle", recorder(calls, "middle"), 50)
        assert [m.priority for m in pipeline.get_middlewares()] == [10, 50, 100]

    def test_ties_keep_registration_order(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []
        for name in ("a", "b", "c"):
            pipeline.register(name, recorder(calls, name), 5)
        assert [m.name for m in pipeline.get_middlewares()] == ["a", "b", "c"]

    def test_duplicate_rejected_and_original_kept(self) -> None:
        pipeline = MiddlewarePipeline()
        original = recorder([], "x")
        pipeline.register("x", original, 10)
        with pytest.raises(SembleError) as exc_info:
            pipeline.register("x", recorder([], "y"), 20)
        assert exc_info.value.code == "MIDDLEWARE_DUPLICATE"
        [registration] = pipeline.get_middlewares()
        assert registration.middleware is original
        assert registration.priority == 10

    def test_unknown_names_return_false(self) -> None:
        pipeline = MiddlewarePipeline()
        assert pipeline.unregister("missing") is False
        assert pipeline.set_enabled("missing", False) is False

    def test_unregister_and_toggle(self) -> None:
        pipeline = MiddlewarePipeline()
        pipeline.register("a", recorder([], "a"))
        pipeline.register("b", recorder([], "b"))
        assert pipeline.set_enabled("a", False) is True
        assert [m.name for m in pipeline.get_enabled_middlewares()] == ["b"]
        assert pipeline.unregister("b") is True
        assert pipeline.get_enabled_middlewares() == []
        pipeline.clear()
        assert pipeline.get_middlewares() == []

    def test_registry_changes_emit_events(self, event_system: EventSystem) -> None:
        pipeline = MiddlewarePipeline(event_system)
        pipeline.register("a", recorder([], "a"), 7)
        [event] = event_system.get_history(MIDDLEWARE_REGISTERED)
        assert event.payload == {"name": "a", "priority": 7, "enabled": True}

    def test_defaults(self) -> None:
        pipeline = MiddlewarePipeline.create_with_defaults()
        assert [(m.name, m.priority) for m in pipeline.get_middlewares()] == [
            ("request-validation", 10),
            ("permission-check", 20),
            ("api-execution", 50),
            ("response-processing", 80),
            ("error-mapping", 90),
        ]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_runs_in_priority_order(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []
        pipeline.register("third", recorder(calls, "third"), 100)
        pipeline.register("first", recorder(calls, "first"), 10)
        pipeline.register("second", recorder(calls, "second"), 50)
        result = await pipeline.execute(make_context())
        assert calls == ["first", "second", "third"]
        assert result.success
        assert result.status == PipelineStatus.COMPLETED
        assert [entry.name for entry in result.trace] == ["first", "second", "third"]
        assert all(entry.success and entry.end_time for entry in result.trace)

    @pytest.mark.asyncio
    async def test_disabled_stage_skipped(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []
        pipeline.register("a", recorder(calls, "a"))
        pipeline.register("b", recorder(calls, "b"))
        pipeline.set_enabled("a", False)
        await pipeline.execute(make_context())
        assert calls == ["b"]

    @pytest.mark.asyncio
    async def test_empty_pipeline_succeeds(self) -> None:
        result = await MiddlewarePipeline().execute(make_context())
        assert result.success
        assert result.trace == []
        assert result.execution_time >= 0

    @pytest.mark.asyncio
    async def test_same_context_returned(self) -> None:
        pipeline = MiddlewarePipeline()

        async def writer(context: PipelineContext, next_: Next) -> None:
            context.shared["seen"] = True
            await next_()

        pipeline.register("writer", writer)
        context = make_context()
        result = await pipeline.execute(context)
        assert result.context is context
        assert context.shared["seen"] is True

    @pytest.mark.asyncio
    async def test_stage_can_stop_chain(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []

        async def gate(context: PipelineContext, next_: Next) -> None:
            calls.append("gate")

        pipeline.register("gate", gate, 1)
        pipeline.register("after", recorder(calls, "after"), 2)
        result = await pipeline.execute(make_context())
        assert calls == ["gate"]
        assert result.success
        assert len(result.trace) == 1

    @pytest.mark.asyncio
    async def test_stage_sees_downstream_effects(self) -> None:
        pipeline = MiddlewarePipeline()
        observed: Dict[str, Any] = {}

        async def outer(context: PipelineContext, next_: Next) -> None:
            await next_()
            observed["inner"] = context.shared.get("inner")

        async def inner(context: PipelineContext, next_: Next) -> None:
            context.shared["inner"] = "done"
            await next_()

        pipeline.register("outer", outer, 1)
        pipeline.register("inner", inner, 2)
        await pipeline.execute(make_context())
        assert observed == {"inner": "done"}

    @pytest.mark.asyncio
    async def test_abort_on_error(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []
        pipeline.register("a", recorder(calls, "a"), 1)
        pipeline.register("b", recorder(calls, "b"), 2)
        pipeline.register("boom", failing("kaput"), 3)
        pipeline.register("d", recorder(calls, "d"), 4)
        result = await pipeline.execute(make_context())

        assert not result.success
        assert result.status == PipelineStatus.FAILED
        assert calls == ["a", "b"]
        assert [entry.name for entry in result.trace] == ["a", "b", "boom"]
        assert result.trace[2].error == "kaput"
        assert not any(entry.success for entry in result.trace)
        error = result.context.error
        assert isinstance(error, SembleError)
        assert error.code == "PIPELINE_ERROR"
        assert error.message == "kaput"

    @pytest.mark.asyncio
    async def test_typed_error_kept_on_abort(self) -> None:
        pipeline = MiddlewarePipeline()

        async def denied(context: PipelineContext, next_: Next) -> None:
            raise SemblePermissionError("no", "patients.read")

        pipeline.register("denied", denied)
        result = await pipeline.execute(make_context())
        assert isinstance(result.context.error, SemblePermissionError)

    @pytest.mark.asyncio
    async def test_continue_on_error(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []
        pipeline.register("a", recorder(calls, "a"), 1)
        pipeline.register("boom", failing("kaput"), 2)
        pipeline.register("c", recorder(calls, "c"), 3)
        pipeline.register("d", recorder(calls, "d"), 4)
        result = await pipeline.execute(
            make_context(), PipelineOptions(continue_on_error=True)
        )

        assert calls == ["a", "c", "d"]
        assert not result.success
        assert result.status == PipelineStatus.COMPLETED_WITH_ERRORS
        assert len(result.trace) == 4
        assert [entry.success for entry in result.trace] == [True, False, True, True]
        assert result.context.error is not None
        assert result.context.error.code == "MIDDLEWARE_ERROR"

    @pytest.mark.asyncio
    async def test_failure_after_next_does_not_rerun_downstream(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []

        async def post_check(context: PipelineContext, next_: Next) -> None:
            calls.append("post-check")
            await next_()
            raise RuntimeError("response failed post-check")

        pipeline.register("post-check", post_check, 1)
        pipeline.register("downstream", recorder(calls, "downstream"), 2)
        result = await pipeline.execute(
            make_context(), PipelineOptions(continue_on_error=True)
        )

        assert calls == ["post-check", "downstream"]
        assert len(result.trace) == 2
        assert [entry.success for entry in result.trace] == [False, True]
        assert result.status == PipelineStatus.COMPLETED_WITH_ERRORS

    @pytest.mark.asyncio
    async def test_repeated_next_is_ignored(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []

        async def twice(context: PipelineContext, next_: Next) -> None:
            await next_()
            await next_()

        pipeline.register("twice", twice, 1)
        pipeline.register("downstream", recorder(calls, "downstream"), 2)
        result = await pipeline.execute(make_context())
        assert calls == ["downstream"]
        assert len(result.trace) == 2

    @pytest.mark.asyncio
    async def test_status_follows_execution(self) -> None:
        pipeline = MiddlewarePipeline()
        seen: List[PipelineStatus] = []

        async def observe(context: PipelineContext, next_: Next) -> None:
            seen.append(pipeline.status)
            await next_()

        pipeline.register("observe", observe)
        assert pipeline.status == PipelineStatus.IDLE
        await pipeline.execute(make_context())
        assert seen == [PipelineStatus.RUNNING]
        assert pipeline.status == PipelineStatus.COMPLETED

        pipeline.register("boom", failing())
        await pipeline.execute(make_context())
        assert pipeline.status == PipelineStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_fails_next_stage(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []

        async def slow(context: PipelineContext, next_: Next) -> None:
            await asyncio.sleep(0.05)
            await next_()

        pipeline.register("slow", slow, 1)
        pipeline.register("after", recorder(calls, "after"), 2)
        result = await pipeline.execute(make_context(), PipelineOptions(timeout_ms=10))

        assert not result.success
        assert calls == []
        assert result.context.error is not None
        assert result.context.error.code == "PIPELINE_TIMEOUT"
        assert result.trace[1].name == "after"
        assert result.trace[1].success is False

    @pytest.mark.asyncio
    async def test_zero_timeout_disables_deadline(self) -> None:
        pipeline = MiddlewarePipeline()
        calls: List[str] = []

        async def slow(context: PipelineContext, next_: Next) -> None:
            await asyncio.sleep(0.02)
            await next_()

        pipeline.register("slow", slow, 1)
        pipeline.register("after", recorder(calls, "after"), 2)
        result = await pipeline.execute(make_context(), PipelineOptions(timeout_ms=0))
        assert result.success
        assert calls == ["after"]


class TestExecutionEvents:
    @pytest.mark.asyncio
    async def test_success_events(self, event_system: EventSystem) -> None:
        pipeline = MiddlewarePipeline(event_system)
        pipeline.register("a", recorder([], "a"))
        await pipeline.execute(make_context())
        [started] = event_system.get_history(PIPELINE_STARTED)
        assert started.middleware_count == 1  # type: ignore[attr-defined]
        assert started.resource == "patient"  # type: ignore[attr-defined]
        assert started.action == "get"  # type: ignore[attr-defined]
        [completed] = event_system.get_history(PIPELINE_COMPLETED)
        assert completed.successful_middleware == 1  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_failure_event(self, event_system: EventSystem) -> None:
        pipeline = MiddlewarePipeline(event_system)
        pipeline.register("boom", failing("kaput"))
        await pipeline.execute(make_context())
        [failed] = event_system.get_history(PIPELINE_FAILED)
        assert failed.error == "kaput"  # type: ignore[attr-defined]
        assert event_system.get_history(PIPELINE_COMPLETED) == []

    @pytest.mark.asyncio
    async def test_continue_events(self, event_system: EventSystem) -> None:
        pipeline = MiddlewarePipeline(event_system)
        pipeline.register("boom", failing("kaput"), 1)
        pipeline.register("a", recorder([], "a"), 2)
        await pipeline.execute(make_context(), PipelineOptions(continue_on_error=True))
        [stage_error] = event_system.get_history(PIPELINE_MIDDLEWARE_ERROR)
        assert stage_error.middleware_name == "boom"  # type: ignore[attr-defined]
        assert stage_error.continuing is True  # type: ignore[attr-defined]
        [done] = event_system.get_history(PIPELINE_COMPLETED_WITH_ERRORS)
        assert done.successful_middleware == 1  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_events_can_be_disabled(self, event_system: EventSystem) -> None:
        pipeline = MiddlewarePipeline(event_system)
        pipeline.register("a", recorder([], "a"))
        await pipeline.execute(make_context(), PipelineOptions(emit_events=False))
        assert event_system.get_history(PIPELINE_STARTED) == []


# ---------------------------------------------------------------------------
# Built-in stages
# ---------------------------------------------------------------------------


class TestDefaultStages:
    @pytest.mark.asyncio
    async def test_happy_path(self) -> None:
        execution = FakeExecution()
        pipeline = MiddlewarePipeline.create_with_defaults()
        context = make_context(execution=execution)
        result = await pipeline.execute(context)

        assert result.success, result.context.error
        assert execution.requested == [CREDENTIALS_NAME]
        shared = context.shared
        assert shared["request_validated"] is True
        assert shared["permission_checked"] is True
        assert shared["api_executed"] is True
        assert shared["response_processed"] is True
        assert "error_mapped" not in shared
        assert context.response is not None
        assert context.response.data["get"]["resource"] == "patient"
        assert context.response.processed_data["processed"] is True
        assert context.response.metadata["query"].endswith("...")

    @pytest.mark.asyncio
    async def test_async_credentials(self) -> None:
        result = await MiddlewarePipeline.create_with_defaults().execute(
            make_context(execution=AsyncFakeExecution())
        )
        assert result.success

    @pytest.mark.asyncio
    async def test_missing_token_fails_permission_check(self) -> None:
        result = await MiddlewarePipeline.create_with_defaults().execute(
            make_context(execution=FakeExecution({"apiKey": "x"}))
        )
        assert not result.success
        error = result.context.error
        assert isinstance(error, SemblePermissionError)
        assert error.required_permission == CREDENTIALS_NAME
        assert error.operation == "get"
        assert error.message.startswith("Permission check failed")
        assert "api_executed" not in result.context.shared

    @pytest.mark.asyncio
    async def test_credentials_lookup_error(self) -> None:
        class Broken:
            def get_credentials(self, name: str) -> Any:
                raise KeyError("no credentials configured")

        result = await MiddlewarePipeline.create_with_defaults().execute(
            make_context(execution=Broken())
        )
        assert isinstance(result.context.error, SemblePermissionError)

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"query": ""}, "query"),
            ({"resource": None}, "resource"),
            ({"action": None}, "action"),
        ],
    )
    @pytest.mark.asyncio
    async def test_request_validation(self, overrides: Dict[str, Any], field: str) -> None:
        result = await MiddlewarePipeline.create_with_defaults().execute(
            make_context(**overrides)
        )
        error = result.context.error
        assert isinstance(error, SembleValidationError)
        assert error.field == field

    @pytest.mark.asyncio
    async def test_processing_without_response(self) -> None:
        pipeline = MiddlewarePipeline()
        pipeline.register("response-processing", response_processing_middleware)
        result = await pipeline.execute(make_context())
        assert result.context.error is not None
        assert result.context.error.code == "PROCESSING_ERROR"

    @pytest.mark.asyncio
    async def test_error_mapping_wraps_later_failures(self) -> None:
        pipeline = MiddlewarePipeline()
        pipeline.register("error-mapping", error_mapping_middleware, 1)
        pipeline.register("boom", failing("connection reset by peer"), 2)
        result = await pipeline.execute(make_context())
        assert result.context.shared["error_mapped"] is True
        assert result.context.error is not None
        assert result.context.error.code == "NETWORK_ERROR"


class TestMapPipelineError:
    @pytest.mark.parametrize(
        "message, code",
        [
            ("Permission denied", "PERMISSION_ERROR"),
            ("UNAUTHORIZED request", "PERMISSION_ERROR"),
            ("Read timeout", "TIMEOUT_ERROR"),
            ("Network unreachable", "NETWORK_ERROR"),
            ("Connection refused", "NETWORK_ERROR"),
            ("something odd", "UNKNOWN_ERROR"),
        ],
    )
    def test_rules(self, message: str, code: str) -> None:
        assert map_pipeline_error(RuntimeError(message)).code == code

    def test_unknown_message_prefixed(self) -> None:
        error = map_pipeline_error(RuntimeError("something odd"))
        assert error.message == "An error occurred: something odd"

    def test_typed_error_untouched(self) -> None:
        error = SembleValidationError("bad")
        assert map_pipeline_error(error) is error


class TestApiExecutionMiddleware:
    @pytest.mark.asyncio
    async def test_executor_result_becomes_response(self) -> None:
        seen: List[Any] = []

        async def executor(query: str, variables: Dict[str, Any]) -> Any:
            seen.append((query, variables))
            return {"patient": {"id": variables["id"]}}

        pipeline = MiddlewarePipeline()
        pipeline.register("api-execution", create_api_execution_middleware(executor))
        pipeline.register("response-processing", response_processing_middleware, 200)
        context = make_context()
        result = await pipeline.execute(context)

        assert result.success
        assert seen == [(context.request.query, {"id": "p-1"})]
        assert context.response is not None
        assert context.response.data == {"patient": {"id": "p-1"}}
        assert context.response.processed_data["patient"] == {"id": "p-1"}

    @pytest.mark.asyncio
    async def test_upstream_error_mapped(self) -> None:
        def executor(query: str, variables: Dict[str, Any]) -> Any:
            raise LookupError("upstream said 404")

        class NotFound(Exception):
            status = 404

        def not_found(query: str, variables: Dict[str, Any]) -> Any:
            raise NotFound("gone")

        pipeline = MiddlewarePipeline()
        pipeline.register("api-execution", create_api_execution_middleware(not_found))
        result = await pipeline.execute(make_context(resource="patients"))
        error = result.context.error
        assert isinstance(error, SembleAPIError)
        assert error.status_code == 404
        assert "patients" in error.message

        pipeline = MiddlewarePipeline()
        pipeline.register("api-execution", create_api_execution_middleware(executor))
        result = await pipeline.execute(make_context())
        assert result.context.error is not None
        assert result.context.error.code == "UNKNOWN_ERROR"


class TestExecuteRequest:
    @pytest.mark.asyncio
    async def test_builds_context(self) -> None:
        pipeline = MiddlewarePipeline.create_with_defaults()
        result = await execute_request(
            pipeline, FakeExecution(), "query { bookings { id } }", None, "booking", "list"
        )
        assert result.success
        request = result.context.request
        assert request.variables == {}
        assert request.resource == "booking"
        assert request.action == "list"
