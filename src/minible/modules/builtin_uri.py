"""
Minible uri module

Interact with HTTP/HTTPS web services from the control node.
"""

import asyncio
import base64
import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

from minible.modules.base import Module, ModuleResult, register_module


SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


@register_module
class UriModule(Module):
    """
    Send an HTTP request and check the response status.

    Runs on the control node, so no session to the host is opened. Like
    Ansible, it never reports changed on its own; use changed_when.
    Requests with side effects are skipped in check mode.
    """

    name = "uri"
    needs_connection = False
    required_args = ["url"]
    optional_args = {
        "method": "GET",
        "body": None,
        "body_format": "raw",       # raw, json, form-urlencoded
        "headers": {},
        "status_code": [200],       # Expected status codes
        "return_content": False,
        "timeout": 30,
        "validate_certs": True,
        "url_username": None,
        "url_password": None,
    }

    async def run(self) -> ModuleResult:
        url = str(self.args["url"])
        method = str(self.get_arg("method", "GET")).upper()
        expected_status = _status_list(self.get_arg("status_code", [200]))

        if self.check_mode and method not in SAFE_METHODS:
            return ModuleResult(skipped=True, msg=f"{method} {url} not sent in check mode")

        request = self._build_request(url, method)
        status, headers, content, error = await asyncio.to_thread(
            _send, request, float(self.get_arg("timeout", 30)), self._ssl_context(),
        )

        if status is None:
            return ModuleResult(failed=True, msg=f"Request to {url} failed: {error}", results={"url": url})

        results: Dict[str, Any] = {"status": status, "url": url, "headers": headers}
        if self.get_arg("return_content"):
            results["content"] = content
            try:
                results["json"] = json.loads(content)
            except ValueError:
                pass

        if status not in expected_status:
            return ModuleResult(
                failed=True,
                msg=f"Status code was {status} and not {expected_status}: {error or 'OK'}",
                results=results,
            )

        return ModuleResult(changed=False, msg=f"{method} {url} returned {status}", results=results)

    def _build_request(self, url: str, method: str) -> urllib.request.Request:
        headers = {str(k): str(v) for k, v in (self.get_arg("headers") or {}).items()}
        body = self.get_arg("body")
        body_format = self.get_arg("body_format", "raw")

        data = None
        if body is not None:
            if body_format == "json":
                data = (body if isinstance(body, str) else json.dumps(body)).encode("utf-8")
                headers.setdefault("Content-Type", "application/json")
            elif body_format == "form-urlencoded":
                data = (body if isinstance(body, str) else urllib.parse.urlencode(body)).encode("utf-8")
                headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
            else:
                data = body if isinstance(body, bytes) else str(body).encode("utf-8")

        user = self.get_arg("url_username")
        password = self.get_arg("url_password")
        if user and password is not None:
            credentials = base64.b64encode(f"{user}:{password}".encode()).decode()
            headers["Authorization"] = f"Basic {credentials}"

        return urllib.request.Request(url, data=data, headers=headers, method=method)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.get_arg("validate_certs", True):
            return None
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context


def _send(
    request: urllib.request.Request,
    timeout: float,
    context: Optional[ssl.SSLContext],
) -> Tuple[Optional[int], Dict[str, str], str, Optional[str]]:
    """Blocking request; returns (status, headers, body, error). HTTP errors still carry a status."""
    try:
        with urllib.request.urlopen(request, timeout=timeout, context=context) as response:
            return (
                response.status,
                dict(response.headers),
                response.read().decode("utf-8", errors="replace"),
                None,
            )
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if e.fp else ""
        return e.code, dict(e.headers or {}), body, str(e.reason)
    except (urllib.error.URLError, OSError, ValueError) as e:
        reason = getattr(e, "reason", e)
        return None, {}, "", str(reason)


def _status_list(value: Any) -> List[int]:
    return [int(s) for s in (value if isinstance(value, list) else [value])]
