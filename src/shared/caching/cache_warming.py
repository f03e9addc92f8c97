"""
Cache warming for the cache gateway.

Preloads read responses under the same keys the read-through middleware
would compute, so the first client request after startup is already a hit.
"""

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from dataclasses import dataclass, field

from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .cache_store import CacheStore


@dataclass
class WarmingJob:
    """A payload to preload into the cache.

    ``resource`` and ``params`` are the values the read route would use to
    build its key; ``loader`` returns the JSON-compatible response body.
    """
    name: str
    resource: str
    loader: Callable[[], Awaitable[Any]]
    params: Mapping[str, Any] = field(default_factory=dict)
    ttl: Optional[int] = None
    priority: int = 1  # 1 = highest, 10 = lowest
    enabled: bool = True
    last_run: Optional[datetime] = None
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0


class CacheWarmer:
    """Runs warming jobs against a cache store."""

    def __init__(self, store: CacheStore):
        self.store = store
        self.logger = get_logger(__name__, 'cache_warmer')
        self.metrics = get_metrics_collector()

        self.jobs: Dict[str, WarmingJob] = {}

        self.stats = {
            'jobs_registered': 0,
            'jobs_executed': 0,
            'jobs_succeeded': 0,
            'jobs_failed': 0,
            'jobs_skipped': 0,
            'total_warming_time': 0.0
        }

    def register_job(self, job: WarmingJob) -> None:
        self.jobs[job.name] = job
        self.stats['jobs_registered'] += 1
        self.logger.info(f"Registered cache warming job: {job.name}", operation="register_job")

    def unregister_job(self, job_name: str) -> bool:
        if self.jobs.pop(job_name, None) is None:
            return False
        self.logger.info(f"Unregistered cache warming job: {job_name}", operation="unregister_job")
        return True

    def list_jobs(self, enabled_only: bool = True) -> List[WarmingJob]:
        """List jobs in priority order."""
        jobs = [job for job in self.jobs.values() if job.enabled or not enabled_only]
        return sorted(jobs, key=lambda j: j.priority)

    async def warm_job(self, job_name: str) -> bool:
        """Execute a single warming job.

        Loader failures are logged and reported as ``False``; they never
        propagate, so a broken job cannot block startup.
        """
        job = self.jobs.get(job_name)
        if not job or not job.enabled:
            self.logger.warning(f"Job {job_name} not found or disabled", operation="warm_job")
            return False

        if not self.store.is_available():
            self.stats['jobs_skipped'] += 1
            self.logger.info(f"Skipping cache warming job {job_name}: cache unavailable", operation="warm_job")
            return False

        key = self.store.build_key(job.resource, dict(job.params))
        ttl = job.ttl or self.store.ttl_for(job.resource)
        start_time = time.perf_counter()
        job.run_count += 1
        job.last_run = datetime.now(timezone.utc)
        self.stats['jobs_executed'] += 1

        try:
            data = await job.loader()
        except Exception as e:
            job.error_count += 1
            self.stats['jobs_failed'] += 1
            self.metrics.get_counter('cache_warming_jobs_total').increment(job=job_name, status='error')
            self.logger.error(f"Cache warming job {job_name} failed: {e}", operation="warm_job", key=key)
            return False

        success = await self.store.set_json(key, data, ttl)
        duration = time.perf_counter() - start_time
        self.stats['total_warming_time'] += duration
        self.metrics.get_counter('cache_warming_jobs_total').increment(
            job=job_name, status='success' if success else 'failed'
        )

        if success:
            job.success_count += 1
            self.stats['jobs_succeeded'] += 1
            self.logger.info(
                f"Cache warming job {job_name} completed in {duration:.2f}s",
                operation="warm_job",
                key=key,
                ttl=ttl,
            )
        else:
            job.error_count += 1
            self.stats['jobs_failed'] += 1
            self.logger.error(f"Cache warming job {job_name} failed to store data", operation="warm_job", key=key)

        return success

    async def warm_all(self) -> Dict[str, bool]:
        """Run every enabled job in priority order."""
        results = {}
        for job in self.list_jobs():
            results[job.name] = await self.warm_job(job.name)
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'jobs': {
                job.name: {
                    'resource': job.resource,
                    'enabled': job.enabled,
                    'run_count': job.run_count,
                    'success_count': job.success_count,
                    'error_count': job.error_count,
                    'last_run': job.last_run.isoformat() if job.last_run else None,
                }
                for job in self.jobs.values()
            },
        }
