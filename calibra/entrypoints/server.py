"""Calibra API server entrypoint.

Wires the metadata database, the envelope store, the ledger client and
the services behind the HTTP API, then serves until SIGINT/SIGTERM.

The envelope key is read from ``CALIBRA_SUBMISSION_ENC_KEY_BASE64`` (name
configurable) on every use; it is never written to settings or logs.
"""

import argparse
import asyncio
import os
import signal
import sys
from dataclasses import dataclass

import bittensor as bt
from dotenv import load_dotenv

from calibra.api.http_server import CalibraHTTPServer
from calibra.audit.reconciler import AuditReconciler
from calibra.auth.nonces import NonceService
from calibra.config import Settings, add_args, load_settings
from calibra.database.manager import Database
from calibra.database.repository import NonceRepository, SubmissionRepository
from calibra.ledger.interface import LedgerClient
from calibra.ledger.memory import InMemoryLedger
from calibra.protocol.canonical import CanonicalizationPolicy
from calibra.protocol.envelope import EnvKeyProvider
from calibra.service.finalize import FinalizeService
from calibra.service.submissions import SubmissionService
from calibra.store.filesystem import FilesystemEnvelopeStore
from calibra.store.http_client import HTTPEnvelopeStore
from calibra.store.interface import EnvelopeStore


@dataclass
class Components:
    database: Database
    store: EnvelopeStore
    ledger: LedgerClient
    server: CalibraHTTPServer


def build_store(settings: Settings) -> EnvelopeStore:
    cfg = settings.store
    if cfg.backend == "http":
        if not cfg.base_url or not cfg.service_key:
            raise ValueError("store.base_url and store.service_key are required for the http backend")
        return HTTPEnvelopeStore(
            base_url=cfg.base_url,
            service_key=cfg.service_key,
            bucket=cfg.bucket,
            timeout=cfg.timeout,
            max_retries=cfg.max_retries,
            retention_days=cfg.retention_days,
        )
    return FilesystemEnvelopeStore(cfg.data_dir, bucket=cfg.bucket, retention_days=cfg.retention_days)


def build_ledger(settings: Settings) -> LedgerClient:
    cfg = settings.ledger
    if cfg.backend == "web3":
        if not cfg.rpc_url or not cfg.contract_address:
            raise ValueError("ledger.rpc_url and ledger.contract_address are required for the web3 backend")
        from calibra.ledger.web3_client import Web3LedgerClient

        return Web3LedgerClient(
            rpc_url=cfg.rpc_url,
            contract_address=cfg.contract_address,
            private_key=os.environ.get(cfg.private_key_env) or None,
            timeout=cfg.timeout,
        )
    return InMemoryLedger()


async def build_components(settings: Settings, ledger: LedgerClient | None = None) -> Components:
    database = Database(settings.database.url, echo=settings.database.echo)
    await database.create_all()
    submissions_repo = SubmissionRepository(database)
    store = build_store(settings)
    ledger = ledger or build_ledger(settings)

    submissions = SubmissionService(
        ledger=ledger,
        store=store,
        submissions=submissions_repo,
        keys=EnvKeyProvider(settings.auth.key_env),
        policy=CanonicalizationPolicy(settings.canonical_policy),
    )
    server = CalibraHTTPServer(
        submissions=submissions,
        finalizer=FinalizeService(ledger, submissions_repo),
        nonces=NonceService(NonceRepository(database), ttl_seconds=settings.auth.nonce_ttl_seconds),
        auditor=AuditReconciler(ledger, submissions_repo),
        host=settings.server.host,
        port=settings.server.port,
    )
    return Components(database=database, store=store, ledger=ledger, server=server)


async def _serve(components: Components, stop: asyncio.Event) -> None:
    await components.server.start()
    try:
        await stop.wait()
    finally:
        await components.server.stop()
        if isinstance(components.store, HTTPEnvelopeStore):
            await components.store.close()
        await components.database.dispose()


def main() -> None:
    # Load .env if not in test mode
    if os.environ.get("CALIBRA_TEST_MODE") != "true":
        load_dotenv()

    parser = argparse.ArgumentParser(description="Calibra submission and settlement API")
    bt.logging.add_args(parser)
    add_args(parser)
    args = parser.parse_args()

    try:
        settings = load_settings(args)
    except ValueError as e:
        bt.logging.error({"calibra_server": {"event": "bad_config", "error": str(e)}})
        sys.exit(1)

    if settings.ledger.backend == "memory":
        bt.logging.warning({"calibra_server": {"event": "memory_ledger", "note": "state is lost on restart"}})
    bt.logging.info({
        "calibra_server": {
            "event": "config",
            "port": settings.server.port,
            "store": settings.store.backend,
            "ledger": settings.ledger.backend,
            "bucket": settings.store.bucket,
        }
    })

    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    def _signal_handler(sig, frame):
        bt.logging.info({"calibra_server": "shutdown_signal_received"})
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        components = loop.run_until_complete(build_components(settings))
        loop.run_until_complete(_serve(components, stop))
    except ValueError as e:
        bt.logging.error({"calibra_server": {"event": "startup_failed", "error": str(e)}})
        sys.exit(1)
    finally:
        loop.close()
        bt.logging.info({"calibra_server": "stopped"})


if __name__ == "__main__":
    main()
