"""
Codeforces API adapter.

Implements the SubmissionSource and ProblemCatalog contracts over the public
Codeforces API using httpx.

- user.status is read newest-first in pages and stops as soon as a page
  reaches submissions older than `since`
- problemset.problems is cached in memory for PROBLEM_CATALOG_TTL_SECONDS
- any transport error or non-OK API status raises SubmissionSourceError
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from duel_engine.config import settings
from duel_engine.exceptions import SubmissionSourceError
from duel_engine.services.collaborators import AcceptedSubmission, ProblemInfo

logger = logging.getLogger(__name__)

ACCEPTED_VERDICT = "OK"


class CodeforcesClient:

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        catalog_ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = (base_url or settings.CODEFORCES_API_BASE_URL).rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.page_size = page_size or settings.CODEFORCES_PAGE_SIZE
        self.max_pages = max_pages or settings.CODEFORCES_MAX_PAGES
        self.catalog_ttl_seconds = (
            settings.PROBLEM_CATALOG_TTL_SECONDS if catalog_ttl_seconds is None else catalog_ttl_seconds
        )
        self.clock = clock

        self._catalog: Dict[Tuple[int, str], ProblemInfo] = {}
        self._catalog_loaded_at: Optional[float] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.SUBMISSION_TIMEOUT_SECONDS)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, params: Dict[str, Any]) -> Any:
        try:
            response = await self.client.get(f"{self.base_url}/{method}", params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise SubmissionSourceError(f"Codeforces {method} request failed: {str(e)}")
        except ValueError as e:
            raise SubmissionSourceError(f"Codeforces {method} returned invalid JSON: {str(e)}")

        if payload.get("status") != "OK":
            raise SubmissionSourceError(
                f"Codeforces {method} failed: {payload.get('comment', 'unknown error')}"
            )
        return payload.get("result")

    # =========================================================================
    # SubmissionSource
    # =========================================================================

    async def fetch_accepted_submissions(self, handle: str, since: int) -> List[AcceptedSubmission]:
        accepted = []
        for page in range(self.max_pages):
            batch = await self._call(
                "user.status",
                {"handle": handle, "from": page * self.page_size + 1, "count": self.page_size},
            )
            batch = batch or []

            reached_older = False
            for submission in batch:
                created = submission.get("creationTimeSeconds", 0)
                if created < since:
                    reached_older = True
                    continue
                if submission.get("verdict") != ACCEPTED_VERDICT:
                    continue
                problem = submission.get("problem") or {}
                if "contestId" not in problem or "index" not in problem:
                    continue
                accepted.append(AcceptedSubmission(
                    problem_contest_id=int(problem["contestId"]),
                    problem_index=str(problem["index"]),
                    submission_id=int(submission.get("id", 0)),
                    creation_time=int(created),
                ))

            if reached_older or len(batch) < self.page_size:
                break
        else:
            logger.warning(f"user.status page limit reached: handle={handle} since={since}")

        return accepted

    # =========================================================================
    # ProblemCatalog
    # =========================================================================

    def _catalog_is_fresh(self) -> bool:
        return (
            self._catalog_loaded_at is not None
            and self.clock() - self._catalog_loaded_at < self.catalog_ttl_seconds
        )

    async def _load_catalog(self) -> None:
        result = await self._call("problemset.problems", {})
        catalog = {}
        for problem in (result or {}).get("problems", []):
            if "contestId" not in problem or "index" not in problem:
                continue
            info = ProblemInfo(
                contest_id=int(problem["contestId"]),
                index=str(problem["index"]),
                name=problem.get("name", ""),
                rating=problem.get("rating"),
                tags=list(problem.get("tags", [])),
            )
            catalog[(info.contest_id, info.index)] = info
        self._catalog = catalog
        self._catalog_loaded_at = self.clock()
        logger.info(f"Problem catalog refreshed: {len(catalog)} problems")

    async def resolve_problem(self, contest_id: int, index: str) -> Optional[ProblemInfo]:
        if not self._catalog_is_fresh():
            try:
                await self._load_catalog()
            except SubmissionSourceError as e:
                if not self._catalog:
                    raise
                logger.warning(f"Problem catalog refresh failed, serving stale entries: {e.message}")
        return self._catalog.get((int(contest_id), str(index)))
