"""
Result store backed by the Django cache.

Caching is an optimisation only: every read that misses (or fails because the
cache backend is unreachable) is answered by recomputing from the raw grades,
so cache errors are logged and swallowed here rather than raised.

All results of one student share a re-entrant lock. The orchestrator holds it
while it invalidates and re-puts a chain, and get() takes it too, so a reader
never sees a half-rebuilt chain. Locks come from a fixed pool of stripes
(GRADING_LOCK_STRIPES); students hashed to the same stripe just wait on each
other. A thread never holds two stripes at once.
"""
import logging
import threading

from . import config
from .results import CalculationResult, Ranking

logger = logging.getLogger(__name__)


class ResultStore:
    """Keyed storage of CalculationResults and Rankings with explicit invalidation."""

    def __init__(self, cache=None, prefix=None, result_timeout=None, ranking_timeout=None, lock_stripes=None):
        self._cache = cache
        self.prefix = prefix if prefix is not None else config.CACHE_PREFIX
        self.result_timeout = result_timeout if result_timeout is not None else config.RESULT_CACHE_TIMEOUT
        self.ranking_timeout = ranking_timeout if ranking_timeout is not None else config.RANKING_CACHE_TIMEOUT
        stripes = lock_stripes if lock_stripes is not None else config.LOCK_STRIPES
        self._locks = tuple(threading.RLock() for _ in range(max(1, stripes)))

    @property
    def cache(self):
        if self._cache is not None:
            return self._cache
        # Django hands out one backend instance per thread
        from django.core.cache import caches
        return caches[config.CACHE_ALIAS]

    def _cache_key(self, key):
        return f'{self.prefix}:{key.cache_key}'

    def lock(self, student_id, academic_year):
        """Re-entrant lock guarding every result of one student for one year."""
        return self._locks[hash((str(student_id), academic_year)) % len(self._locks)]

    # ============ Cache Access ============

    def _read(self, cache_key):
        try:
            return self.cache.get(cache_key)
        except Exception as e:
            logger.warning(f"Result cache read failed for {cache_key}, falling back to recomputation: {e}")
            return None

    def _write(self, cache_key, value, timeout):
        try:
            self.cache.set(cache_key, value, timeout)
        except Exception as e:
            logger.warning(f"Result cache write failed for {cache_key}: {e}")

    def _delete(self, cache_key):
        try:
            self.cache.delete(cache_key)
        except Exception as e:
            logger.warning(f"Result cache delete failed for {cache_key}: {e}")

    # ============ Results ============

    def get(self, key):
        """Return the stored CalculationResult for key, or None."""
        with self.lock(key.student_id, key.academic_year):
            value = self._read(self._cache_key(key))
        if isinstance(value, CalculationResult) and value.key == key:
            logger.debug(f"Cache hit for {key}")
            return value
        return None

    def put(self, key, result):
        with self.lock(key.student_id, key.academic_year):
            self._write(self._cache_key(key), result, self.result_timeout)

    def invalidate(self, key):
        with self.lock(key.student_id, key.academic_year):
            self._delete(self._cache_key(key))

    # ============ Rankings ============

    def get_ranking(self, scope):
        value = self._read(self._cache_key(scope))
        if isinstance(value, Ranking) and value.scope == scope:
            logger.debug(f"Cache hit for {scope.cache_key}")
            return value
        return None

    def put_ranking(self, scope, ranking):
        self._write(self._cache_key(scope), ranking, self.ranking_timeout)

    def invalidate_ranking(self, scope):
        self._delete(self._cache_key(scope))
