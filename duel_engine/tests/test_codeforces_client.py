"""
Tests for the Codeforces adapter against a mocked HTTP transport.
"""
import httpx
import pytest

from duel_engine.exceptions import SubmissionSourceError
from duel_engine.services.codeforces_client import CodeforcesClient

BASE_URL = "https://cf.test/api"


def _submission(submission_id, created, contest_id=1700, index="A", verdict="OK"):
    return {
        "id": submission_id,
        "creationTimeSeconds": created,
        "verdict": verdict,
        "problem": {"contestId": contest_id, "index": index, "name": "x"},
    }


def _client(handler, clock=None, **kwargs):
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(transport=transport)
    if clock is not None:
        kwargs["clock"] = clock
    return CodeforcesClient(base_url=BASE_URL, client=http, **kwargs)


@pytest.mark.asyncio
async def test_pages_until_older_than_since():
    # Newest first, two per page
    pages = [
        [_submission(5, 5000), _submission(4, 4000, index="B", verdict="WRONG_ANSWER")],
        [_submission(3, 3000, index="C"), _submission(2, 1500)],
        [_submission(1, 500)],
    ]
    requests = []

    def handler(request):
        requests.append(dict(request.url.params))
        page = (int(request.url.params["from"]) - 1) // 2
        return httpx.Response(200, json={"status": "OK", "result": pages[page]})

    client = _client(handler, page_size=2, max_pages=10)
    accepted = await client.fetch_accepted_submissions("tourist", since=2000)

    assert [(s.submission_id, s.problem_index) for s in accepted] == [(5, "A"), (3, "C")]
    assert [r["from"] for r in requests] == ["1", "3"]
    assert requests[0]["handle"] == "tourist"
    assert requests[0]["count"] == "2"


@pytest.mark.asyncio
async def test_short_page_ends_paging():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"status": "OK", "result": [_submission(1, 3000)]})

    client = _client(handler, page_size=5, max_pages=10)
    accepted = await client.fetch_accepted_submissions("tourist", since=0)

    assert len(calls) == 1
    assert calls[0] == "/api/user.status"
    assert accepted[0].creation_time == 3000
    assert accepted[0].problem_contest_id == 1700


@pytest.mark.asyncio
async def test_non_ok_status_raises():
    def handler(request):
        return httpx.Response(200, json={"status": "FAILED", "comment": "handle: User not found"})

    client = _client(handler)
    with pytest.raises(SubmissionSourceError) as exc:
        await client.fetch_accepted_submissions("nobody", since=0)
    assert "User not found" in exc.value.message


@pytest.mark.asyncio
async def test_http_error_and_bad_json_raise():
    def server_error(request):
        return httpx.Response(503, text="Service Unavailable")

    def not_json(request):
        return httpx.Response(200, text="<html>rate limited</html>")

    with pytest.raises(SubmissionSourceError):
        await _client(server_error).fetch_accepted_submissions("tourist", since=0)
    with pytest.raises(SubmissionSourceError):
        await _client(not_json).fetch_accepted_submissions("tourist", since=0)


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_catalog_is_cached_until_ttl_and_served_stale_on_failure():
    state = {"calls": 0, "fail": False}

    def handler(request):
        state["calls"] += 1
        if state["fail"]:
            return httpx.Response(502)
        return httpx.Response(200, json={
            "status": "OK",
            "result": {"problems": [
                {"contestId": 1700, "index": "A", "name": "Two Arrays", "rating": 1200, "tags": ["greedy"]},
                {"contestId": 1700, "index": "B", "name": "No Rating", "tags": []},
            ]},
        })

    clock = _Clock()
    client = _client(handler, clock=clock, catalog_ttl_seconds=60)

    problem = await client.resolve_problem(1700, "A")
    assert problem.name == "Two Arrays"
    assert problem.rating == 1200
    assert problem.tags == ["greedy"]
    assert (await client.resolve_problem(1700, "B")).rating is None
    assert await client.resolve_problem(1, "Z") is None
    assert state["calls"] == 1

    clock.now = 120
    state["fail"] = True
    assert (await client.resolve_problem(1700, "A")).name == "Two Arrays"
    assert state["calls"] == 2


@pytest.mark.asyncio
async def test_catalog_failure_without_cache_raises():
    client = _client(lambda request: httpx.Response(500))
    with pytest.raises(SubmissionSourceError):
        await client.resolve_problem(1700, "A")
