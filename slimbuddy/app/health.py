import asyncio
import logging
import os
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

import httpx
import psutil
import sentry_sdk

from .database import SB, SupabaseSettings
from .logging_config import DatabaseError, ExternalServiceError

logger = logging.getLogger(__name__)

AUTH_HEALTH_PATH = "/auth/v1/health"
AUTH_PROBE_TIMEOUT = 5.0


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _elapsed_ms(started: float) -> int:
    return int((time.time() - started) * 1000)


class HealthChecker:
    """Checks the services the API depends on: the database, Supabase auth and Sentry"""

    def __init__(self):
        self.checks: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            'database': self._check_database,
            'supabase_auth': self._check_supabase_auth,
            'sentry': self._check_sentry,
        }

    async def run_all_checks(self) -> Dict[str, Any]:
        started = time.time()
        results = await asyncio.gather(*(self._timed(name, check) for name, check in self.checks.items()))
        checks = dict(zip(self.checks, results))

        return {
            'status': 'healthy' if all(c['healthy'] for c in checks.values()) else 'degraded',
            'timestamp': _utc_stamp(),
            'response_time_ms': _elapsed_ms(started),
            'checks': checks,
            'environment': os.environ.get('ENVIRONMENT', 'unknown')
        }

    async def _timed(self, name: str, check) -> Dict[str, Any]:
        started = time.time()
        try:
            details = await check()
        except Exception as e:
            logger.error(f"Health check failed for {name}: {e}")
            return {'status': 'error', 'healthy': False, 'error': str(e), 'response_time_ms': _elapsed_ms(started)}
        return {'status': 'ok', 'healthy': True, 'response_time_ms': _elapsed_ms(started), **details}

    async def _check_database(self) -> Dict[str, Any]:
        if not await SB.ping():
            raise DatabaseError("health_check", "connect_keys probe failed")
        return {'connection': 'ok', 'read_access': 'ok'}

    async def _check_supabase_auth(self) -> Dict[str, Any]:
        """Bearer sessions are resolved through GoTrue, so it has to answer"""
        settings = SupabaseSettings.from_env()
        if not settings.configured:
            return {'service': 'disabled', 'details': 'Supabase not configured'}

        try:
            async with httpx.AsyncClient(timeout=AUTH_PROBE_TIMEOUT) as client:
                response = await client.get(settings.url + AUTH_HEALTH_PATH, headers={"apikey": settings.key})
        except httpx.HTTPError as e:
            raise ExternalServiceError("Supabase Auth", str(e))

        if response.status_code != 200:
            raise ExternalServiceError("Supabase Auth", "unhealthy", response.status_code)
        return {'service': 'ok'}

    async def _check_sentry(self) -> Dict[str, Any]:
        if not os.environ.get("SENTRY_DSN"):
            return {'connection': 'disabled', 'details': 'Sentry not configured'}
        if not sentry_sdk.is_initialized():
            raise ExternalServiceError("Sentry", "client not initialized")
        return {'connection': 'ok'}


class MetricsCollector:
    """Process-local counters for the /metrics endpoint"""

    def __init__(self):
        self.start_time = time.time()
        self.request_count = 0
        self.error_count = 0
        self.keys_issued = 0
        self.key_rejections: Counter = Counter()

    def get_metrics(self) -> Dict[str, Any]:
        uptime_seconds = int(time.time() - self.start_time)
        return {
            'uptime_seconds': uptime_seconds,
            'uptime_human': format_uptime(uptime_seconds),
            'requests_total': self.request_count,
            'errors_total': self.error_count,
            'error_rate': self.error_count / max(self.request_count, 1),
            'connect_keys_issued': self.keys_issued,
            'connect_key_rejections': dict(self.key_rejections),
            'memory_usage': memory_usage(),
            'timestamp': _utc_stamp()
        }

    def increment_requests(self):
        self.request_count += 1

    def increment_errors(self):
        self.error_count += 1

    def record_key_issued(self):
        self.keys_issued += 1

    def record_key_rejected(self, reason: str):
        # not_found / revoked / expired; never exposed to the caller of the rejected request
        self.key_rejections[reason] += 1


def format_uptime(seconds: int) -> str:
    """12d 3h 4m 5s, dropping leading zero units"""
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)

    parts = [(days, 'd'), (hours, 'h'), (minutes, 'm')]
    while parts and parts[0][0] == 0:
        parts.pop(0)
    return " ".join(f"{value}{unit}" for value, unit in parts + [(secs, 's')])


def memory_usage() -> Dict[str, Any]:
    try:
        info = psutil.Process().memory_info()
    except psutil.Error as e:
        return {'error': str(e)}
    return {
        'rss_mb': round(info.rss / 1024 / 1024, 2),
        'vms_mb': round(info.vms / 1024 / 1024, 2)
    }


health_checker = HealthChecker()
metrics_collector = MetricsCollector()
