"""
CLI: Fergus -> Airtable (sync incremental).

Uso recomendado:
  - Ejecutar como job (cron/systemd timer), p.ej. una vez al dia.
  - La credencial de Fergus (cookie) la provee un proceso externo via FERGUS_COOKIE.

Variables de entorno requeridas:
  - FERGUS_COOKIE
  - AIRTABLE_TOKEN
  - AIRTABLE_BASE_ID
  - DATABASE_URL (opcional: guarda el checkpoint en Postgres en vez de archivo)

Ejecución:
  python scripts/run_incremental_sync.py
  python scripts/run_incremental_sync.py --entity jobs --profile safe
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from loguru import logger
from dotenv import load_dotenv

# Permite ejecutar este script desde cualquier cwd sin configurar PYTHONPATH.
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

load_dotenv(_ROOT / ".env", override=False)

from fergus_sync.application.use_cases.incremental_sync_use_cases import (
    SyncRunResult,
    build_from_env,
)
from fergus_sync.core.config import SyncSettings
from fergus_sync.core.events import shutdown, startup
from fergus_sync.shared.exceptions.sync import AuthExpiredError, CheckpointError, SyncConfigError
from fergus_sync.shared.utils.datetime_utils import utc_now


EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_AUTH_EXPIRED = 2
EXIT_CONFIG = 3
EXIT_CANCELLED = 130


def _write_report(report_dir: Path, result: SyncRunResult) -> Path:
    """Exporta el resumen de la corrida como JSON."""
    report_dir.mkdir(parents=True, exist_ok=True)
    stamp = result.report.started_at.strftime("%Y%m%dT%H%M%SZ")
    path = report_dir / f"sync-{result.report.entity}-{stamp}.json"
    data = result.report.to_dict()
    data["checkpoint_advanced"] = result.checkpoint_advanced
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info(f"Reporte escrito en {path}")
    return path


async def _run(config: SyncSettings, entities: list[str], report_dir: Path) -> int:
    engine, pipelines = build_from_env(config, entities=entities)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.cancel)
        except (NotImplementedError, RuntimeError):
            # Windows: sin add_signal_handler, Ctrl+C corta sin cancelacion cooperativa
            pass

    try:
        results = await engine.run_all(pipelines, on_result=lambda r: _write_report(report_dir, r))
    except AuthExpiredError as e:
        logger.error(f"Credencial de Fergus expirada: {e.message}. Renovar FERGUS_COOKIE y reintentar.")
        if e.report is not None:
            _write_report(report_dir, SyncRunResult(report=e.report, checkpoint_advanced=False))
        return EXIT_AUTH_EXPIRED
    except CheckpointError as e:
        logger.error(f"Checkpoint invalido: {e.message}")
        return EXIT_CONFIG

    if engine.cancel_event.is_set():
        return EXIT_CANCELLED
    if all(r.report.fully_succeeded for r in results):
        return EXIT_OK
    return EXIT_PARTIAL


def main() -> int:
    parser = argparse.ArgumentParser(description="Sync incremental Fergus -> Airtable")
    parser.add_argument(
        "--entity",
        choices=["jobs", "invoices", "all"],
        default="all",
        help="Entidad a sincronizar (default: all = jobs y luego invoices).",
    )
    parser.add_argument(
        "--profile",
        choices=["default", "fast", "safe"],
        default=None,
        help="Perfil de ritmo/concurrencia (default: SYNC_PROFILE).",
    )
    parser.add_argument(
        "--report-dir",
        default=None,
        help="Directorio para los reportes JSON (default: REPORT_DIR).",
    )
    args = parser.parse_args()

    try:
        config = SyncSettings().with_profile(args.profile)
    except SyncConfigError as e:
        logger.error(f"Configuracion invalida: {e.message}")
        return EXIT_CONFIG

    startup(config)
    entities = ["jobs", "invoices"] if args.entity == "all" else [args.entity]
    report_dir = Path(args.report_dir or config.REPORT_DIR)

    logger.info(f"Iniciando sync incremental ({', '.join(entities)}) a las {utc_now().isoformat()}")
    try:
        return asyncio.run(_run(config, entities, report_dir))
    except SyncConfigError as e:
        logger.error(f"Configuracion invalida: {e.message}")
        return EXIT_CONFIG
    finally:
        shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
