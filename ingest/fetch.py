from __future__ import annotations

import httpx

from app.errors import FetchError


DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0)


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    accept: str = "application/json",
    timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    extra_headers: dict[str, str] | None = None,
) -> tuple[bytes, int]:
    """GET `url` and return the body with the elapsed time in milliseconds.

    Timeouts, transport failures and non-2xx responses raise `FetchError`;
    the HTTP status is kept on the error when there was one.
    """
    headers = {"User-Agent": user_agent, "Accept": accept}
    if extra_headers:
        headers.update(extra_headers)

    try:
        response = await client.get(url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise FetchError(f"timeout fetching {url}") from e
    except httpx.RequestError as e:
        raise FetchError(f"request failed for {url}: {e}") from e

    if not response.is_success:
        raise FetchError(
            f"HTTP {response.status_code} from {url}",
            status_code=response.status_code,
        )

    elapsed_ms = int(response.elapsed.total_seconds() * 1000)
    return response.content, elapsed_ms
