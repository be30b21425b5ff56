"""End-to-end tests for the request pipeline against a mocked upstream."""

import asyncio
import base64
import logging

import httpx
import pytest

from openapi_mcp.compiler import ToolCompiler
from openapi_mcp.errors import (
    AuthenticationError,
    ConcurrencyLimitError,
    NetworkError,
    PolicyError,
    RateLimitError,
    UpstreamHttpError,
    ValidationError,
)
from openapi_mcp.executors import RequestPipeline


@pytest.fixture
def tools(spec):
    return {tool.name: tool for tool in ToolCompiler().compile(spec)}


@pytest.fixture
def pipeline(state, settings_box):
    return RequestPipeline(state, settings_provider=settings_box)


class TestValidation:
    async def test_missing_path_parameter(self, pipeline, tools, upstream):
        with pytest.raises(ValidationError, match="^Missing required path parameter: id$"):
            await pipeline.execute(tools["widgets_get"], {})
        assert upstream.requests == []

    async def test_missing_required_body(self, pipeline, tools, upstream):
        with pytest.raises(ValidationError, match="Missing required parameter: body"):
            await pipeline.execute(tools["createWidget"], {})
        assert upstream.requests == []

    async def test_constraint_violation(self, pipeline, tools, upstream):
        with pytest.raises(ValidationError, match="^Invalid input: limit"):
            await pipeline.execute(tools["listWidgets"], {"limit": 500})
        assert upstream.requests == []

    async def test_nested_body_violation(self, pipeline, tools, upstream):
        with pytest.raises(ValidationError, match="Invalid input"):
            await pipeline.execute(tools["createWidget"], {"body": {"name": ""}})
        assert upstream.requests == []

    @pytest.mark.parametrize("body", [{"a": "text"}, {"a": 5}, {"a": 1.5}])
    async def test_any_of_accepts_either_branch(self, pipeline, tools, body):
        result = await pipeline.execute(tools["testUnionAny"], {"body": body})
        assert result["ok"] is True

    async def test_any_of_rejects_no_branch(self, pipeline, tools, upstream):
        with pytest.raises(ValidationError, match="Invalid input"):
            await pipeline.execute(tools["testUnionAny"], {"body": {"a": True}})
        assert upstream.requests == []

    async def test_one_of_requires_exactly_one_branch(self, pipeline, tools, upstream):
        # 5 is both an integer and a number, so both branches match.
        with pytest.raises(ValidationError, match="Invalid input"):
            await pipeline.execute(tools["testUnionOne"], {"body": {"y": 5}})
        assert upstream.requests == []
        await pipeline.execute(tools["testUnionOne"], {"body": {"y": 5.5}})
        assert upstream.last_json() == {"y": 5.5}

    async def test_union_array_items(self, pipeline, tools, upstream):
        await pipeline.execute(tools["testUnionArray"], {"body": ["a", 1]})
        assert upstream.last_json() == ["a", 1]
        with pytest.raises(ValidationError):
            await pipeline.execute(tools["testUnionArray"], {"body": [True]})


class TestRequestBuilding:
    async def test_path_parameter_is_encoded(self, pipeline, tools, upstream):
        await pipeline.execute(tools["widgets_get"], {"id": "a b/c"})
        assert upstream.api_requests()[0].url.raw_path == b"/v1/widgets/a%20b%2Fc"

    async def test_query_and_header_routing(self, pipeline, tools, upstream):
        await pipeline.execute(tools["listWidgets"], {"limit": 5, "X-Trace": "t-1"})
        request = upstream.api_requests()[0]
        assert request.method == "GET"
        assert request.url.params["limit"] == "5"
        assert request.headers["X-Trace"] == "t-1"
        assert request.headers["Accept"] == "application/json"

    async def test_json_body(self, pipeline, tools, upstream):
        await pipeline.execute(tools["createWidget"], {"body": {"name": "gear", "size": 3}})
        request = upstream.api_requests()[0]
        assert request.headers["Content-Type"] == "application/json"
        assert upstream.last_json() == {"name": "gear", "size": 3}

    async def test_cookies_fold_into_one_header(self, spec, state, settings_box, upstream):
        spec["paths"]["/widgets/{id}"]["get"]["security"] = [{"apiKeyCookie": []}]
        tool = {t.name: t for t in ToolCompiler().compile(spec)}["widgets_get"]
        pipeline = RequestPipeline(state, settings_provider=settings_box)
        await pipeline.execute(tool, {"id": "7", "tenant": "acme", "session": "s-1"})
        request = upstream.api_requests()[0]
        assert request.headers.get_list("Cookie") == ["session=s-1; tenant=acme"]

    async def test_explicit_form_content_type(self, state, settings_box, upstream):
        document = {
            "servers": [{"url": "http://api.test"}],
            "paths": {
                "/forms": {
                    "post": {
                        "operationId": "submitForm",
                        "parameters": [
                            {"name": "Content-Type", "in": "header", "schema": {"type": "string"}}
                        ],
                        "requestBody": {
                            "content": {"application/json": {"schema": {"type": "object"}}}
                        },
                    }
                }
            },
        }
        tool = ToolCompiler().compile(document)[0]
        pipeline = RequestPipeline(state, settings_provider=settings_box)
        await pipeline.execute(
            tool,
            {
                "Content-Type": "application/x-www-form-urlencoded",
                "body": {"a": 1, "flag": True},
            },
        )
        request = upstream.api_requests()[0]
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert request.content == b"a=1&flag=true"

    async def test_base_url_from_settings(self, pipeline, tools, upstream, settings_box):
        settings_box.set(openapi_base_url="http://api.test/v2/")
        await pipeline.execute(tools["otherThing"], {})
        assert upstream.api_requests()[0].url.path == "/v2/other-thing"


class TestSecurity:
    async def test_missing_credentials_fail_before_network(self, pipeline, tools, upstream):
        with pytest.raises(AuthenticationError, match="bearerToken"):
            await pipeline.execute(tools["pingBearer"], {})
        assert upstream.requests == []

    async def test_api_key_header(self, pipeline, tools, upstream):
        await pipeline.execute(tools["pingApiKey"], {"X-API-Key": "k-1"})
        assert upstream.api_requests()[0].headers["X-API-Key"] == "k-1"

    async def test_api_key_query(self, pipeline, tools, upstream):
        await pipeline.execute(tools["pingQueryKey"], {"api_key": "k-2"})
        assert upstream.api_requests()[0].url.params["api_key"] == "k-2"

    async def test_settings_fallback(self, pipeline, tools, upstream, settings_box):
        settings_box.set(openapi_basic_user="ann", openapi_basic_pass="pw")
        await pipeline.execute(tools["pingBasic"], {})
        expected = base64.b64encode(b"ann:pw").decode("ascii")
        assert upstream.api_requests()[0].headers["Authorization"] == f"Basic {expected}"

    async def test_alternative_group(self, pipeline, tools, upstream):
        await pipeline.execute(tools["pingEither"], {"username": "u", "password": "p"})
        assert upstream.api_requests()[0].headers["Authorization"].startswith("Basic ")

    async def test_oauth_token_is_cached_across_calls(self, pipeline, tools, upstream):
        arguments = {"clientId": "cid", "clientSecret": "secret"}
        await pipeline.execute(tools["getWidgetsOAuth"], arguments)
        await pipeline.execute(tools["getWidgetsOAuth"], arguments)
        assert len(upstream.token_requests()) == 1
        for request in upstream.api_requests():
            assert request.headers["Authorization"] == "Bearer test_access_token"
            assert "clientSecret" not in str(request.url)

    async def test_optional_security_allows_anonymous_call(self, pipeline, tools, upstream):
        result = await pipeline.execute(tools["getPublic"], {})
        assert result["path"] == "/v1/public"
        assert "Authorization" not in upstream.api_requests()[0].headers

    async def test_optional_security_uses_supplied_token(self, pipeline, tools, upstream):
        await pipeline.execute(tools["getPublic"], {"bearerToken": "t"})
        assert upstream.api_requests()[0].headers["Authorization"] == "Bearer t"

    async def test_unsupported_scheme_sends_no_credentials(self, pipeline, tools, upstream):
        await pipeline.execute(tools["pingOpenId"], {})
        assert "Authorization" not in upstream.api_requests()[0].headers


class TestResponses:
    async def test_json_result(self, pipeline, tools):
        result = await pipeline.execute(tools["listWidgets"], {})
        assert result == {"ok": True, "method": "GET", "path": "/v1/widgets"}

    async def test_text_result(self, pipeline, tools, upstream):
        upstream.handler = lambda request: httpx.Response(200, text="plain words")
        assert await pipeline.execute(tools["listWidgets"], {}) == "plain words"

    async def test_empty_result(self, pipeline, tools, upstream):
        upstream.handler = lambda request: httpx.Response(204)
        assert await pipeline.execute(tools["deleteWidget"], {"id": "1"}) == ""

    async def test_upstream_error(self, pipeline, tools, upstream):
        upstream.handler = lambda request: httpx.Response(404, json={"error": "nope"})
        with pytest.raises(UpstreamHttpError) as excinfo:
            await pipeline.execute(tools["widgets_get"], {"id": "9"})
        assert excinfo.value.status_code == 404
        assert excinfo.value.body == {"error": "nope"}
        assert excinfo.value.message == 'API Error: 404 Not Found - {"error": "nope"}'

    async def test_upstream_text_error(self, pipeline, tools, upstream):
        upstream.handler = lambda request: httpx.Response(500, text="exploded")
        with pytest.raises(UpstreamHttpError, match="API Error: 500 Internal Server Error - exploded"):
            await pipeline.execute(tools["listWidgets"], {})

    async def test_timeout_becomes_network_error(self, pipeline, tools, upstream, state):
        def slow(request):
            raise httpx.ReadTimeout("too slow", request=request)

        upstream.handler = slow
        with pytest.raises(NetworkError, match="timed out"):
            await pipeline.execute(tools["listWidgets"], {})
        assert state.concurrency.in_flight == 0

    async def test_transport_error_becomes_network_error(self, pipeline, tools, upstream):
        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        upstream.handler = refused
        with pytest.raises(NetworkError, match="failed"):
            await pipeline.execute(tools["listWidgets"], {})

    async def test_malformed_base_url_becomes_network_error(self, pipeline, tools, upstream, settings_box, state):
        settings_box.set(openapi_base_url="http://api.test:notaport")
        with pytest.raises(NetworkError, match="Invalid URL"):
            await pipeline.execute(tools["otherThing"], {})
        assert upstream.api_requests() == []
        assert state.concurrency.in_flight == 0


class TestLiveSettings:
    async def test_settings_read_on_every_call(self, pipeline, tools, upstream, settings_box):
        await pipeline.execute(tools["listWidgets"], {})
        settings_box.set(openapi_mcp_allowed_methods="POST")
        with pytest.raises(PolicyError, match="Method not allowed: GET"):
            await pipeline.execute(tools["listWidgets"], {})
        assert settings_box.reads == 2
        assert len(upstream.api_requests()) == 1

    async def test_path_policy_uses_resolved_path(self, pipeline, tools, upstream, settings_box):
        settings_box.set(openapi_mcp_allowed_paths="/widgets/1*")
        await pipeline.execute(tools["widgets_get"], {"id": "12"})
        with pytest.raises(PolicyError, match="Path not allowed: /widgets/2"):
            await pipeline.execute(tools["widgets_get"], {"id": "2"})
        assert len(upstream.api_requests()) == 1

    async def test_rate_limit(self, pipeline, tools, upstream, settings_box):
        settings_box.set(openapi_mcp_rate_limit=1)
        await pipeline.execute(tools["listWidgets"], {})
        with pytest.raises(RateLimitError):
            await pipeline.execute(tools["listWidgets"], {})
        assert len(upstream.api_requests()) == 1

    async def test_per_path_concurrency(self, pipeline, tools, upstream, settings_box, state):
        settings_box.set(openapi_mcp_max_concurrency_per_path=1)
        entered = asyncio.Event()
        release = asyncio.Event()

        async def blocking(request):
            entered.set()
            await release.wait()
            return httpx.Response(200, json={"done": True})

        upstream.handler = blocking
        first = asyncio.create_task(pipeline.execute(tools["widgets_get"], {"id": "1"}))
        await asyncio.wait_for(entered.wait(), timeout=1)

        with pytest.raises(ConcurrencyLimitError):
            await pipeline.execute(tools["widgets_get"], {"id": "2"})
        # A different path template is not affected.
        other = asyncio.create_task(pipeline.execute(tools["listWidgets"], {}))

        release.set()
        assert await first == {"done": True}
        assert await other == {"done": True}
        assert state.concurrency.in_flight == 0
        assert await pipeline.execute(tools["widgets_get"], {"id": "2"}) == {"done": True}


class TestAudit:
    async def test_audit_record_redacts_arguments(self, pipeline, tools, caplog):
        with caplog.at_level(logging.INFO, logger="openapi_mcp.audit"):
            await pipeline.execute(tools["pingBearer"], {"bearerToken": "s3cret"})
        record = next(r for r in caplog.records if r.name == "openapi_mcp.audit")
        assert record.audit["tool"] == "pingBearer"
        assert record.audit["status"] == 200
        assert record.audit["ok"] is True
        assert record.audit["arguments"] == {"bearerToken": "***REDACTED***"}
        assert "s3cret" not in caplog.text

    async def test_failed_call_is_audited(self, pipeline, tools, caplog):
        with caplog.at_level(logging.INFO, logger="openapi_mcp.audit"):
            with pytest.raises(ValidationError):
                await pipeline.execute(tools["widgets_get"], {})
        record = next(r for r in caplog.records if r.name == "openapi_mcp.audit")
        assert record.audit["ok"] is False
        assert record.audit["status"] is None
