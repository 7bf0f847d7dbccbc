import asyncio
import time
from typing import Dict, Any, Awaitable, Callable
from datetime import datetime, timezone
import logging
import httpx
import sentry_sdk

from . import config
from .database import SB
from .logging_config import ExternalServiceError, DatabaseError

logger = logging.getLogger(__name__)

Check = Callable[[], Awaitable[Dict[str, Any]]]

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

def _elapsed_ms(started: float) -> int:
    return int((time.time() - started) * 1000)

class HealthChecker:
    """Dependency probes behind /health/full; a check passes unless it raises"""

    def __init__(self):
        self.checks: Dict[str, Check] = {
            'database': self._check_database,
            'supabase_auth': self._check_supabase_auth,
            'sentry': self._check_sentry
        }

    async def run_all_checks(self) -> Dict[str, Any]:
        started = time.time()
        results = await asyncio.gather(*(self._timed(name, check) for name, check in self.checks.items()))
        checks = dict(zip(self.checks, results))

        return {
            'status': 'healthy' if all(c['healthy'] for c in checks.values()) else 'degraded',
            'timestamp': utc_now_iso(),
            'response_time_ms': _elapsed_ms(started),
            'checks': checks,
            'environment': config.ENVIRONMENT
        }

    async def _timed(self, name: str, check: Check) -> Dict[str, Any]:
        started = time.time()
        try:
            details = await check()
        except Exception as e:
            logger.error(f"Health check failed for {name}: {e}")
            return {'status': 'error', 'healthy': False, 'error': str(e), 'response_time_ms': _elapsed_ms(started)}
        return {'status': 'ok', 'healthy': True, 'response_time_ms': _elapsed_ms(started), **details}

    async def _check_database(self) -> Dict[str, Any]:
        if not await SB.ping():
            raise DatabaseError("health_check", "medications table not reachable")
        return {'connection': 'ok', 'last_check': utc_now_iso()}

    async def _check_supabase_auth(self) -> Dict[str, Any]:
        """Check the Supabase auth (GoTrue) health endpoint"""
        if not config.SUPABASE_URL or not config.SUPABASE_KEY:
            raise ExternalServiceError("Supabase Auth", "credentials not configured")

        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(
                f"{config.SUPABASE_URL.rstrip('/')}/auth/v1/health",
                headers={"apikey": config.SUPABASE_KEY}
            )

        if response.status_code != 200:
            raise ExternalServiceError("Supabase Auth", "health endpoint failed", response.status_code)
        return {'service': 'ok'}

    async def _check_sentry(self) -> Dict[str, Any]:
        if not config.SENTRY_DSN:
            return {'connection': 'disabled', 'details': 'Sentry not configured'}
        if not sentry_sdk.is_initialized():
            raise ExternalServiceError("Sentry", "client not initialized")
        return {'connection': 'ok'}

class MetricsCollector:
    """Process-local request and dose-action counters"""

    def __init__(self):
        self.start_time = time.time()
        self.request_count = 0
        self.error_count = 0
        self.dose_actions: Dict[str, int] = {}

    def increment_requests(self):
        self.request_count += 1

    def increment_errors(self):
        self.error_count += 1

    def record_dose_action(self, action: str):
        self.dose_actions[action] = self.dose_actions.get(action, 0) + 1

    def get_metrics(self) -> Dict[str, Any]:
        uptime = int(time.time() - self.start_time)
        return {
            'uptime_seconds': uptime,
            'uptime_human': format_uptime(uptime),
            'requests_total': self.request_count,
            'errors_total': self.error_count,
            'error_rate': self.error_count / max(self.request_count, 1),
            'dose_actions': dict(self.dose_actions),
            'timestamp': utc_now_iso()
        }

def format_uptime(seconds: int) -> str:
    """90061 -> '1d 1h 1m 1s', leading zero units omitted"""
    units = [('d', seconds // 86400), ('h', seconds % 86400 // 3600), ('m', seconds % 3600 // 60)]
    while units and units[0][1] == 0:
        units.pop(0)
    return " ".join(f"{value}{suffix}" for suffix, value in units + [('s', seconds % 60)])

# Global instances
health_checker = HealthChecker()
metrics_collector = MetricsCollector()
