"""HTTP API for providers, operators and auditors.

Routes:
  GET  /auth/nonce?address=0x..        - issue a login nonce + message to sign
  POST /submissions/upload             - seal and store a forecast (signed)
  POST /submissions/set-commit-index   - record the ledger index of a commit (signed)
  POST /submissions/read               - decrypt a provider's latest submission (signed)
  POST /batches/finalize               - prepare (and optionally submit) finalize params (signed)
  GET  /audit/{batch_hash}             - public reconciliation timeline

Signed routes carry ``address`` and ``signature`` over the message from
/auth/nonce; each nonce is good for one request. Errors are returned as
``{"ok": false, "error": <code>, "detail": <message>}``.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable

import bittensor as bt
from aiohttp import web

from calibra.audit.reconciler import AuditReconciler
from calibra.audit.redaction import contains_secret
from calibra.auth.nonces import NonceService, format_expiry
from calibra.errors import CalibraError, ForbiddenError, IntegrityError, ValidationError
from calibra.protocol.hashing import normalize_address
from calibra.service.finalize import FinalizeService
from calibra.service.submissions import SubmissionService

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _short(address: str | None) -> str:
    return address[:10] if address else "none"


def _field(body: dict[str, Any], name: str) -> str:
    return str(body.get(name) or "").strip()


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("invalid_body", code="invalid_body") from e
    if not isinstance(body, dict):
        raise ValidationError("invalid_body", code="invalid_body")
    return body


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except CalibraError as e:
        log = bt.logging.error if e.http_status >= 500 else bt.logging.warning
        log({"calibra_request": {"endpoint": request.path, "status": e.http_status, "error": e.code}})
        return web.json_response({"ok": False, "error": e.code, "detail": e.detail}, status=e.http_status)


class CalibraHTTPServer:
    """aiohttp front end over the submission, finalize and audit services."""

    def __init__(
        self,
        submissions: SubmissionService,
        finalizer: FinalizeService,
        nonces: NonceService,
        auditor: AuditReconciler,
        host: str = "0.0.0.0",
        port: int = 8300,
    ):
        self.submissions = submissions
        self.finalizer = finalizer
        self.nonces = nonces
        self.auditor = auditor
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/auth/nonce", self._handle_nonce)
        app.router.add_post("/submissions/upload", self._handle_upload)
        app.router.add_post("/submissions/set-commit-index", self._handle_set_commit_index)
        app.router.add_post("/submissions/read", self._handle_read)
        app.router.add_post("/batches/finalize", self._handle_finalize)
        app.router.add_get("/audit/{batch_hash}", self._handle_audit)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"calibra_http": {"status": "started", "port": self.port}})

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            bt.logging.info({"calibra_http": "stopped"})

    async def _authenticate(self, body: dict[str, Any]) -> str:
        address = normalize_address(_field(body, "address"))
        signature = _field(body, "signature")
        if not signature.startswith("0x"):
            raise ValidationError("Missing signature", code="missing_signature")
        return await self.nonces.authenticate(address, signature)

    # -- Auth --

    async def _handle_nonce(self, request: web.Request) -> web.Response:
        raw = request.query.get("address", "").strip()
        if not raw:
            raise ValidationError("Missing address", code="missing_address")
        challenge = await self.nonces.issue(raw)
        return web.json_response({
            "ok": True,
            "address": challenge.address,
            "nonce": challenge.nonce,
            "expires_at": format_expiry(challenge.expires_at),
            "message": challenge.message,
        })

    # -- Submissions --

    async def _handle_upload(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        address = await self._authenticate(body)
        receipt = await self.submissions.upload(
            _field(body, "batchId"),
            _field(body, "batchIdHash"),
            address,
            body.get("payload"),
        )
        bt.logging.info({"calibra_request": {"endpoint": "submissions/upload", "provider": _short(address), "status": 200}})
        return web.json_response({
            "ok": True,
            "batchId": receipt.batch_id,
            "batchIdHash": receipt.batch_hash,
            "address": receipt.provider,
            "root": receipt.root,
            "salt": receipt.salt,
            "commitHash": receipt.commit_hash,
            "encryptedUriHash": receipt.encrypted_uri_hash,
            "storage": {"bucket": receipt.storage_bucket, "path": receipt.storage_path},
            "publicUri": receipt.public_uri,
        })

    async def _handle_set_commit_index(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        address = await self._authenticate(body)
        provider = normalize_address(_field(body, "providerAddress"), "provider")
        if address != provider:
            raise ForbiddenError("address must equal providerAddress")
        raw_index = body.get("commitIndex")
        if isinstance(raw_index, bool) or not isinstance(raw_index, int) or raw_index < 0:
            raise ValidationError("Invalid commitIndex", code="invalid_commit_index")

        result = await self.submissions.set_commit_index(
            _field(body, "batchIdHash"), provider, _field(body, "commitHash"), raw_index,
        )
        out: dict[str, Any] = {"ok": True, "commitIndex": result.commit_index}
        if result.already_set:
            out["already_set"] = True
        return web.json_response(out)

    async def _handle_read(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        viewer = await self._authenticate(body)
        result = await self.submissions.read(
            viewer, _field(body, "batchIdHash"), _field(body, "providerAddress"),
        )
        record = result.record
        bt.logging.info({"calibra_request": {"endpoint": "submissions/read", "viewer": _short(viewer), "status": 200}})
        return web.json_response({
            "ok": True,
            "batchIdHash": record.batch_hash,
            "providerAddress": record.provider_address,
            "submission": {
                "commitHash": record.commit_hash,
                "commitIndex": record.commit_index,
                "root": record.root,
                "salt": record.salt,
                "encryptedUriHash": record.encrypted_uri_hash,
                "createdAt": record.created_at.isoformat(),
                "storage": {"bucket": record.storage_bucket, "path": record.storage_path},
            },
            "payload": result.payload,
        })

    # -- Settlement --

    async def _handle_finalize(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        operator = await self._authenticate(body)
        batch_id = _field(body, "batchId")
        if not batch_id:
            raise ValidationError("Missing batchId", code="invalid_batch_id")

        prepared = await self.finalizer.prepare(operator, batch_id, _field(body, "batchIdHash") or None)
        submitted = False
        if body.get("submit") is True:
            await self.finalizer.submit(operator, batch_id)
            submitted = True

        record = prepared.record
        return web.json_response({
            "ok": True,
            "batchId": record.batchId,
            "batchIdHash": record.batchIdHash,
            "operator": record.operator,
            "funder": record.funder,
            "providers": record.providers,
            "selectedCommitIndices": record.selectedCommitIndices,
            "payouts": record.payouts,
            "scoresHash": prepared.params.scores_hash,
            "scoresJson": prepared.params.scores_json,
            "skippedProviders": prepared.skipped,
            "submitted": submitted,
        })

    # -- Audit --

    async def _handle_audit(self, request: web.Request) -> web.Response:
        report = await self.auditor.build_report(request.match_info["batch_hash"])
        rows = [c.off_ledger for p in report.providers for c in p.commits] + report.orphans
        if any(contains_secret(row) for row in rows):
            raise IntegrityError("audit rows carry secret fields", code="redaction_failure")
        data = report.model_dump(mode="json")
        data["ok"] = True
        return web.json_response(data)


__all__ = ["CalibraHTTPServer", "error_middleware"]
