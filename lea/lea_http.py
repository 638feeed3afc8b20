import asyncio
import json
from typing import Optional, Dict, Any

import httpx

from lea.lea_datatypes import Record
from lea.lea_errors import LeaError, TypeMismatch
from lea.lea_printer import stringify
from lea.lea_serialize import deserialize, detect_format, from_lea, to_lea


def request_options(options: Any) -> Dict[str, Any]:
    """
    Reads the `{method, headers, body}` options record given to `fetch`.
    Record bodies are sent as JSON; other non-string bodies are stringified.
    """
    if options is None:
        return {'method': 'GET', 'headers': {}, 'body': None}
    if not isinstance(options, Record):
        raise TypeMismatch("fetch options must be a record")
    fields = options.fields

    method = fields.get('method', 'GET')
    if not isinstance(method, str):
        raise TypeMismatch("fetch method must be a string")

    headers = fields.get('headers')
    if headers is None:
        headers = {}
    elif isinstance(headers, Record):
        headers = {k: stringify(v) for k, v in headers.fields.items()}
    else:
        raise TypeMismatch("fetch headers must be a record")

    body = fields.get('body')
    match body:
        case None | str():
            pass
        case Record():
            body = json.dumps(from_lea(body))
        case _:
            body = stringify(body)
    return {'method': method, 'headers': headers, 'body': body}


async def http_fetch(url: str, *, config: Optional[Dict] = None, options: Any = None) -> Record:
    """
    Performs one HTTP request and packages the response as a Lea record:
    `{status, ok, statusText, body, headers}`.

    Non-2xx responses are returned, not raised. Transport failures are
    retried with exponential backoff and re-raised as LeaError.
    """
    if not isinstance(url, str):
        raise TypeMismatch("fetch requires a string URL")
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    req = request_options(options)

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                body = req['body']
                headers = dict(req['headers'])
                if body is not None:
                    headers.setdefault("Content-Type", "text/plain; charset=utf-8")
                resp = await client.request(
                    req['method'].upper(),
                    url,
                    headers=headers,
                    content=body.encode('utf-8') if body is not None else None,
                )
                break
            except httpx.HTTPError as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise LeaError(f"fetch failed for {url}: {last_exc}") from last_exc

    ct = resp.headers.get("Content-Type")
    if detect_format(ct) == 'json':
        value = to_lea(deserialize(resp.content, content_type=ct, fmt='json'))
    else:
        value = resp.text
    # Lower-case header keys for consistent lookups
    headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
    return Record({
        'status': int(resp.status_code),
        'ok': 200 <= resp.status_code < 300,
        'statusText': resp.reason_phrase,
        'body': value,
        'headers': Record(headers_map),
    })
