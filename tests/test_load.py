from fakes import FakeClock
from wapi.config import RATE_LIMIT_POLICIES

PROXY_URL = "/api/geocoding?name=Berlin"

MAX_REQUESTS = RATE_LIMIT_POLICIES["weather"].max_requests
TOTAL_REQUESTS = MAX_REQUESTS + 20
EXPECTED_SUCCESS = MAX_REQUESTS
EXPECTED_BLOCKED = 20


async def test_weather_policy_blocks_overflow_then_resets(app, client, audit_rows):
    clock = FakeClock()
    app.state.gateway.rate_limiter.clock = clock
    headers = {"X-Forwarded-For": "203.0.113.50"}

    results = []
    for _ in range(TOTAL_REQUESTS):
        response = await client.get(PROXY_URL, headers=headers)
        results.append(response)

    statuses = [response.status_code for response in results]
    assert statuses.count(200) == EXPECTED_SUCCESS
    assert statuses.count(429) == EXPECTED_BLOCKED
    assert statuses == [200] * EXPECTED_SUCCESS + [429] * EXPECTED_BLOCKED, "rejections only start once the window is full"

    first = results[0]
    assert first.headers["X-RateLimit-Limit"] == str(MAX_REQUESTS)
    assert first.headers["X-RateLimit-Remaining"] == str(MAX_REQUESTS - 1)
    assert results[EXPECTED_SUCCESS - 1].headers["X-RateLimit-Remaining"] == "0"

    rows = await audit_rows()
    assert len(rows) == TOTAL_REQUESTS

    clock.advance(seconds=61)
    response = await client.get(PROXY_URL, headers=headers)
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == str(MAX_REQUESTS - 1)
