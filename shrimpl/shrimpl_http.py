import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, Any, List, Tuple

import httpx

from shrimpl.shrimpl_serialize import deserialize


class HttpError(RuntimeError):
    """A non-2xx response, after all retries."""
    def __init__(self, status: int, url: str, preview: str = ""):
        super().__init__(f"HTTP {status} for {url}: {preview}" if preview else f"HTTP {status} for {url}")
        self.status = status
        self.url = url


def _split_config(config: Optional[Dict]) -> Tuple[float, int, float, dict, dict]:
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 10.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))
    return timeout, retries, backoff, headers, params


def _package(resp, url: str, as_text: bool, fmt: Optional[str]) -> Any:
    if not (200 <= resp.status_code < 300):
        raise HttpError(int(resp.status_code), url, (resp.text or "")[:200])
    if as_text:
        return resp.text
    ct = resp.headers.get("Content-Type")
    return deserialize(resp.content, content_type=ct, fmt=fmt, strict=fmt is not None)


def http_request(method: str, url: str, *, config: Optional[Dict] = None,
                 json_body: Any = None, fmt: Optional[str] = None, as_text: bool = False) -> Any:
    """
    Core blocking HTTP helper.

    config keys: timeout, retries, backoff (seconds, doubled per attempt),
    headers, params. Returns the body as a string when `as_text` is set,
    otherwise the deserialized body. Non-2xx responses raise HttpError.
    """
    timeout, retries, backoff, headers, params = _split_config(config)

    with httpx.Client(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                kwargs: Dict[str, Any] = {"headers": headers, "params": params}
                if json_body is not None:
                    kwargs["json"] = json_body
                resp = client.request(method.upper(), url, **kwargs)
                return _package(resp, url, as_text, fmt)
            except (httpx.HTTPError, HttpError) as e:
                last_exc = e
                if attempt < retries:
                    time.sleep(backoff * (2 ** attempt))
                    continue
                raise last_exc


def http_get(url: str, config: Optional[Dict] = None) -> str:
    return http_request('GET', url, config=config, as_text=True)


def http_get_json(url: str, config: Optional[Dict] = None) -> Any:
    return http_request('GET', url, config=config, fmt='json')


def http_post_json(url: str, payload: Any, config: Optional[Dict] = None) -> Any:
    return http_request('POST', url, config=config, json_body=payload, fmt='json')


async def _fetch_text(client, url: str, retries: int, backoff: float, headers: dict) -> str:
    last_exc = None
    for attempt in range(retries + 1):
        try:
            resp = await client.request('GET', url, headers=headers)
            return _package(resp, url, True, None)
        except (httpx.HTTPError, HttpError) as e:
            last_exc = e
            if attempt < retries:
                await asyncio.sleep(backoff * (2 ** attempt))
                continue
            raise last_exc


async def _gather_text(urls: List[str], config: Optional[Dict]) -> List[str]:
    timeout, retries, backoff, headers, _ = _split_config(config)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        return await asyncio.gather(*(_fetch_text(client, u, retries, backoff, headers) for u in urls))


def http_get_many(urls: List[str], config: Optional[Dict] = None) -> List[str]:
    """Fetches all URLs concurrently; results keep the input order. Any failure raises."""
    if not urls:
        return []
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return list(asyncio.run(_gather_text(list(urls), config)))
    # Called from inside an event loop: run on a worker thread with its own loop.
    with ThreadPoolExecutor(max_workers=1) as pool:
        return list(pool.submit(asyncio.run, _gather_text(list(urls), config)).result())


__all__ = [
    "HttpError",
    "http_request",
    "http_get",
    "http_get_json",
    "http_post_json",
    "http_get_many",
]
