"""HTTP + WebSocket gateway for grove.

Thin adapter: all state lives in the engine components (WorkspaceManager,
DiffEngine, OAuthManager, ToolApprovalBroker, TerminalSessionManager).
This module only handles routing, request validation, error mapping,
the chat SSE relay and the two WebSocket channels.
"""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import html
import json
import logging
import os
import signal
import sys
import time
import uuid
import weakref
from pathlib import Path
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from grove.adapters.events import (
    ApprovalAcknowledged,
    ErrorEvent,
    FrameError,
    GroveEvent,
    ToolApprovalDecision,
    ToolCall,
    event_to_dict,
    parse_approval_response,
)
from grove.engine.approvals import ApprovalSubscription, ToolApprovalBroker
from grove.engine.config import GroveConfig
from grove.engine.diff import DiffEngine
from grove.engine.errors import (
    GroveError,
    SubscriberLimitError,
    ValidationError,
)
from grove.engine.oauth import CredentialStore, OAuthManager, PendingFlowStore, TokenCipher
from grove.engine.process import ProcessRunner
from grove.engine.review import ReviewService
from grove.engine.providers import (
    GenerationRequest,
    ProviderCredentials,
    ProviderRegistry,
    build_provider_registry,
)
from grove.engine.terminal import PtySession, TerminalSessionManager, exit_notice
from grove.engine.workspace_store import WorkspaceStore
from grove.engine.workspaces import CreateWorkspaceRequest, WorkspaceManager

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-grove-request-id"

STATUS_BY_KIND = {
    "validation": 400,
    "auth": 401,
    "not_found": 404,
    "timeout": 504,
    "external_tool": 502,
    "storage": 500,
}

# level -> (max_tokens, thinking budget)
LEVEL_BUDGETS: dict[str, tuple[int, int | None]] = {
    "low": (8192, 2000),
    "medium": (16384, 5000),
    "high": (32768, 10000),
    "megathink": (64000, 30000),
}
DEFAULT_BUDGET: tuple[int, int | None] = (8192, None)

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent working inside an isolated git worktree. "
    "Make focused changes, explain what you changed and why, and prefer "
    "small verifiable steps over large rewrites."
)
PLAN_SYSTEM_PROMPT = (
    "You are in planning mode. Investigate the code with read-only tools "
    "and produce a step-by-step implementation plan. Do not modify files "
    "or run commands that change state; such tool calls will be denied."
)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def budget_for_level(level: Any) -> tuple[int, int | None]:
    return LEVEL_BUDGETS.get(str(level).lower(), DEFAULT_BUDGET) if level else DEFAULT_BUDGET


def normalize_messages(messages: Any) -> list[dict[str, Any]]:
    """Reduce UI chat messages to ``{role, content}`` pairs.

    Accepts plain ``content`` (string or block list) or ``parts`` lists of
    ``{type: "text", text}``. Roles other than user/assistant are dropped.
    """
    if not isinstance(messages, list) or not messages:
        raise ValidationError("messages is required")
    normalized: list[dict[str, Any]] = []
    for message in messages:
        if not isinstance(message, dict):
            raise ValidationError("each message must be an object")
        role = message.get("role")
        if role not in ("user", "assistant"):
            continue
        content = message.get("content")
        if content is None and isinstance(message.get("parts"), list):
            content = "".join(
                str(part.get("text", ""))
                for part in message["parts"]
                if isinstance(part, dict) and part.get("type") == "text"
            )
        if isinstance(content, str):
            if not content:
                continue
        elif not isinstance(content, list):
            raise ValidationError(f"unsupported content for a {role} message")
        normalized.append({"role": role, "content": content})
    if not normalized:
        raise ValidationError("messages contain no user or assistant content")
    return normalized


def _callback_page(title: str, body: str, ok: bool) -> str:
    color = "#22c55e" if ok else "#ef4444"
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        "<body style=\"background:#0a0a0f;color:#e5e7eb;font-family:sans-serif;"
        "display:flex;justify-content:center;align-items:center;height:100vh;\">"
        f"<div><h1 style=\"color:{color};\">{html.escape(title)}</h1>"
        f"<p>{html.escape(body)}</p></div></body></html>"
    )


class GroveServer:
    """aiohttp application wiring the engine components together."""

    def __init__(
        self,
        config: GroveConfig | None = None,
        *,
        workspaces: WorkspaceManager | None = None,
        diff: DiffEngine | None = None,
        oauth: OAuthManager | None = None,
        approvals: ToolApprovalBroker | None = None,
        terminals: TerminalSessionManager | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        self._config = config or GroveConfig.from_env()
        cfg = self._config
        runner = ProcessRunner(default_timeout=cfg.timeout_or_none(cfg.git_timeout_seconds))

        self._workspaces = workspaces if workspaces is not None else WorkspaceManager(
            WorkspaceStore(cfg.state_path),
            runner,
            workspaces_root=cfg.workspaces_root,
            repos_root=cfg.repos_root,
            clone_timeout=cfg.timeout_or_none(cfg.clone_timeout_seconds),
            script_timeout=cfg.timeout_or_none(cfg.script_timeout_seconds),
        )
        self._diff = diff if diff is not None else DiffEngine(runner)
        self._review = ReviewService(self._diff)
        self._oauth = oauth if oauth is not None else OAuthManager(
            CredentialStore(cfg.credentials_path, TokenCipher()),
            PendingFlowStore(cfg.pending_flows_path, ttl_seconds=cfg.oauth_flow_ttl_seconds),
            cfg.oauth,
            refresh_threshold_seconds=cfg.token_refresh_threshold_seconds,
        )
        self._approvals = approvals if approvals is not None else ToolApprovalBroker(
            timeout_seconds=cfg.approval_timeout_seconds,
            max_subscribers=cfg.max_approval_subscribers,
            required_tools=cfg.approval_required_tools,
        )
        self._terminals = terminals if terminals is not None else TerminalSessionManager(
            shell=cfg.shell, cols=cfg.terminal_cols, rows=cfg.terminal_rows,
        )
        self._providers = providers if providers is not None else build_provider_registry(cfg)

        self._started_at = time.time()
        self._websockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._closed = False
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware],
        )
        self._app.on_shutdown.append(self._on_shutdown)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "GroveServer init host=%s port=%s workspaces=%s state=%s pid=%s",
            cfg.host, cfg.port, cfg.workspaces_root, cfg.state_path, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def approvals(self) -> ToolApprovalBroker:
        return self._approvals

    @property
    def terminals(self) -> TerminalSessionManager:
        return self._terminals

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get(REQUEST_ID_HEADER, str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except GroveError as exc:
            status = STATUS_BY_KIND.get(exc.kind, 500)
            log = logger.warning if status >= 500 else logger.info
            log(
                "HTTP %s %s req=%s -> %d %s: %s",
                request.method, request.path, request.get("req_id"), status, exc.kind, exc.message,
            )
            return web.json_response(exc.to_dict(), status=status)
        except Exception:
            logger.exception("Unhandled error for %s %s", request.method, request.path)
            return web.json_response(
                {"error": "Internal server error", "kind": "internal"}, status=500,
            )

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Workspaces
        r.add_get("/workspaces", self._handle_list_workspaces)
        r.add_post("/workspaces", self._handle_create_workspace)
        r.add_get("/workspaces/{id}", self._handle_get_workspace)
        r.add_get("/workspaces/{id}/diffs", self._handle_get_diffs)
        r.add_get("/workspaces/{id}/files", self._handle_get_files)
        r.add_get("/workspaces/{id}/diff-hunks", self._handle_get_diff_hunks)
        r.add_get("/workspaces/{id}/config", self._handle_get_script_config)
        r.add_post("/workspaces/{id}/run-script", self._handle_run_script)
        r.add_post("/workspaces/{id}/review", self._handle_review)
        r.add_post("/repos/branch-exists", self._handle_branch_exists)
        # OAuth
        r.add_get("/oauth/status", self._handle_oauth_status)
        r.add_post("/oauth/start", self._handle_oauth_start)
        r.add_post("/oauth/complete", self._handle_oauth_complete)
        r.add_get("/oauth/callback", self._handle_oauth_callback)
        r.add_get("/oauth/token", self._handle_oauth_token)
        r.add_post("/oauth/logout", self._handle_oauth_logout)
        # Chat
        r.add_post("/chat", self._handle_chat)
        # WebSocket channels
        r.add_get("/ws/terminal", self._handle_terminal_ws)
        r.add_get("/ws/tool-approval", self._handle_approval_ws)

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("Request body must be valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    # ── Health ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
            "providers": self._providers.list_available(),
        })

    # ── Workspaces ──

    async def _handle_list_workspaces(self, request: web.Request) -> web.Response:
        workspaces = await self._workspaces.list_workspaces()
        return web.json_response({"workspaces": [ws.to_dict() for ws in workspaces]})

    async def _handle_create_workspace(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        workspace = await self._workspaces.create_workspace(CreateWorkspaceRequest.from_dict(body))
        return web.json_response(workspace.to_dict())

    async def _handle_get_workspace(self, request: web.Request) -> web.Response:
        workspace = await self._workspaces.get_workspace(request.match_info["id"])
        return web.json_response(workspace.to_dict())

    async def _handle_get_diffs(self, request: web.Request) -> web.Response:
        workspace = await self._workspaces.get_workspace(request.match_info["id"])
        diffs = await self._diff.get_file_changes(workspace.worktree_path)
        return web.json_response({"diffs": [d.to_dict() for d in diffs]})

    async def _handle_get_files(self, request: web.Request) -> web.Response:
        workspace = await self._workspaces.get_workspace(request.match_info["id"])
        tree = await self._diff.get_file_tree(workspace.worktree_path)
        return web.json_response({"fileTree": [node.to_dict() for node in tree]})

    async def _handle_get_diff_hunks(self, request: web.Request) -> web.Response:
        file_path = request.query.get("file", "")
        if not file_path:
            raise ValidationError("Missing file parameter")
        workspace = await self._workspaces.get_workspace(request.match_info["id"])
        hunks = await self._diff.get_file_diff_hunks(workspace.worktree_path, file_path)
        return web.json_response({"hunks": [h.to_dict() for h in hunks]})

    async def _handle_get_script_config(self, request: web.Request) -> web.Response:
        workspace = await self._workspaces.get_workspace(request.match_info["id"])
        return web.json_response(await self._workspaces.load_script_config(workspace))

    async def _handle_run_script(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        result = await self._workspaces.run_script(request.match_info["id"], str(body.get("type") or ""))
        return web.json_response(result.to_dict())

    async def _handle_review(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        workspace = await self._workspaces.get_workspace(request.match_info["id"])
        token = await self._oauth.get_access_token()
        provider = self._providers.require(self._config.provider)
        review = await self._review.review(
            workspace.worktree_path,
            provider,
            ProviderCredentials(access_token=token.access_token, api_key=token.api_key),
            model=str(body.get("model") or self._config.review_model),
        )
        return web.json_response({"success": True, "review": review.to_dict()})

    async def _handle_branch_exists(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        branch = str(body.get("branch") or "").strip()
        if not branch:
            raise ValidationError("branch is required")
        if body.get("repoUrl"):
            exists = await self._workspaces.branch_exists_remote(str(body["repoUrl"]), branch)
        elif body.get("repoPath"):
            repo_path = Path(str(body["repoPath"])).expanduser()
            if not repo_path.is_dir():
                raise ValidationError(f"Repository path does not exist: {body['repoPath']}")
            exists = await self._workspaces.branch_exists(repo_path, branch)
        else:
            raise ValidationError("repoPath or repoUrl is required")
        return web.json_response({"exists": exists})

    # ── OAuth ──

    async def _handle_oauth_status(self, request: web.Request) -> web.Response:
        return web.json_response(await self._oauth.get_status())

    async def _handle_oauth_start(self, request: web.Request) -> web.Response:
        start = await self._oauth.start_login()
        return web.json_response(start.to_dict())

    async def _handle_oauth_complete(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        grant = await self._oauth.complete_login(
            str(body.get("code") or ""),
            str(body.get("verifier") or ""),
            str(body.get("state") or ""),
        )
        return web.json_response(grant.to_dict())

    async def _handle_oauth_callback(self, request: web.Request) -> web.Response:
        code = request.query.get("code", "")
        state = request.query.get("state", "")
        try:
            await self._oauth.handle_callback(code, state)
        except GroveError as exc:
            status = STATUS_BY_KIND.get(exc.kind, 500)
            return web.Response(
                text=_callback_page("Login failed", exc.message, ok=False),
                status=status,
                content_type="text/html",
            )
        return web.Response(
            text=_callback_page("Logged in", "You can close this window and return to grove.", ok=True),
            content_type="text/html",
        )

    async def _handle_oauth_token(self, request: web.Request) -> web.Response:
        token = await self._oauth.get_access_token()
        return web.json_response(token.to_dict())

    async def _handle_oauth_logout(self, request: web.Request) -> web.Response:
        await self._oauth.logout()
        return web.json_response({"status": "logged_out"})

    # ── Chat ──

    async def _handle_chat(self, request: web.Request) -> web.StreamResponse:
        body = await self._read_json(request)
        messages = normalize_messages(body.get("messages"))
        token = await self._oauth.get_access_token()
        provider = self._providers.require(self._config.provider)

        plan_mode = bool(body.get("planMode"))
        tool_approval = bool(body.get("toolApproval"))
        max_tokens, thinking_budget = budget_for_level(body.get("level"))
        system_prompt = str(body.get("system") or DEFAULT_SYSTEM_PROMPT)
        if plan_mode:
            system_prompt = f"{PLAN_SYSTEM_PROMPT}\n\n{system_prompt}"
        tools = body.get("tools") if isinstance(body.get("tools"), list) else []

        generation = GenerationRequest(
            messages=messages,
            system_prompt=system_prompt,
            model=str(body.get("model") or self._config.default_model),
            max_tokens=max_tokens,
            thinking_budget=thinking_budget,
            tools=tools,
        )
        credentials = ProviderCredentials(access_token=token.access_token, api_key=token.api_key)

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        logger.info(
            "Chat stream req=%s model=%s plan=%s approval=%s level=%s",
            request.get("req_id"), generation.model, plan_mode, tool_approval, body.get("level"),
        )
        try:
            async for event in provider.stream(generation, credentials):
                await self._send_sse(response, event)
                if isinstance(event, ToolCall):
                    decision = await self._decide_tool_call(event, plan_mode, tool_approval)
                    if decision is not None:
                        await self._send_sse(response, decision)
        except GroveError as exc:
            logger.warning("Chat stream req=%s failed: %s", request.get("req_id"), exc.message)
            await self._send_sse(response, ErrorEvent(error=exc.message))
        except ConnectionResetError:
            logger.info("Chat client disconnected req=%s", request.get("req_id"))
            return response
        await response.write_eof()
        return response

    async def _decide_tool_call(
        self, event: ToolCall, plan_mode: bool, tool_approval: bool,
    ) -> ToolApprovalDecision | None:
        if plan_mode and not self._approvals.is_safe(event.tool_name):
            approved = False
        elif tool_approval:
            approved = await self._approvals.check(event.tool_name, event.input)
        else:
            return None
        return ToolApprovalDecision(
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            approved=approved,
        )

    @staticmethod
    async def _send_sse(response: web.StreamResponse, event: GroveEvent) -> None:
        await response.write(f"data: {json.dumps(event_to_dict(event))}\n\n".encode())

    # ── Terminal channel ──

    async def _handle_terminal_ws(self, request: web.Request) -> web.WebSocketResponse:
        session = await self._terminals.open_session(request.query.get("cwd") or None)
        ws = web.WebSocketResponse()
        try:
            await ws.prepare(request)
        except Exception:
            await self._terminals.close_session(session.id)
            raise
        self._websockets.add(ws)
        pump = asyncio.create_task(self._pump_terminal_output(session, ws))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._terminals.handle_client_frame(session, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    session.write(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.info("Terminal socket error session=%s: %s", session.id, ws.exception())
                    break
        finally:
            self._websockets.discard(ws)
            # Once the shell exits the pump tears the session down itself.
            if session.process.returncode is None:
                pump.cancel()
            await self._terminals.close_session(session.id)
            await asyncio.wait([pump])
            if not pump.cancelled() and pump.exception() is not None:
                logger.info("Terminal output pump for %s failed: %r", session.id, pump.exception())
        return ws

    async def _pump_terminal_output(self, session: PtySession, ws: web.WebSocketResponse) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        async for chunk in session.output():
            text = decoder.decode(chunk)
            if text and not ws.closed:
                await ws.send_str(text)
        tail = decoder.decode(b"", final=True)
        code = await session.wait()
        await self._terminals.close_session(session.id)
        if ws.closed:
            return
        if tail:
            await ws.send_str(tail)
        await ws.send_str(exit_notice(code))
        await ws.close()

    # ── Approval channel ──

    async def _handle_approval_ws(self, request: web.Request) -> web.StreamResponse:
        try:
            subscription = self._approvals.subscribe()
        except SubscriberLimitError as exc:
            return web.json_response(exc.to_dict(), status=503)
        ws = web.WebSocketResponse()
        try:
            await ws.prepare(request)
        except Exception:
            self._approvals.unsubscribe(subscription)
            raise
        self._websockets.add(ws)
        sender = asyncio.create_task(self._forward_approvals(subscription, ws))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_approval_frame(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.info("Approval socket error: %s", ws.exception())
                    break
        finally:
            sender.cancel()
            self._approvals.unsubscribe(subscription)
            self._websockets.discard(ws)
            with contextlib.suppress(asyncio.CancelledError):
                await sender
        return ws

    @staticmethod
    async def _forward_approvals(
        subscription: ApprovalSubscription, ws: web.WebSocketResponse
    ) -> None:
        async for message in subscription:
            if ws.closed:
                return
            try:
                await ws.send_json(message)
            except ConnectionResetError as exc:
                logger.info("Approval listener %d went away: %s", subscription.id, exc)
                return

    async def _handle_approval_frame(self, ws: web.WebSocketResponse, raw: str) -> None:
        try:
            response = parse_approval_response(json.loads(raw))
        except ValueError as exc:
            # FrameError is a ValueError too.
            message = str(exc) if isinstance(exc, FrameError) else "invalid JSON"
            await ws.send_json(event_to_dict(ErrorEvent(error=message)))
            return
        handled = self._approvals.respond(response.approval_id, response.approved, response.reason)
        await ws.send_json(event_to_dict(
            ApprovalAcknowledged(approval_id=response.approval_id, handled=handled)
        ))

    # ── Lifecycle ──

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._websockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.close()

    async def close(self) -> None:
        """Drain approvals, close PTYs and release providers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._approvals.drain()
        await self._terminals.shutdown()
        await self._providers.shutdown_all()
        logger.info("Grove components shut down")

    async def start(self) -> None:
        """Start the server, print the port to stdout and run until stopped."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Grove server started but no listening socket was reported.")

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Grove server listening on %s:%d", self._config.host, actual_port)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
        try:
            await stop.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            logger.info("Server shutting down")
            await runner.cleanup()
            await self.close()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None


__all__ = ["GroveServer", "budget_for_level", "normalize_messages"]
