from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import ConnectorError, ObjectNotFoundError


@dataclass(frozen=True)
class RetryPolicy:
    """Повторы по транзиентным ответам (429/5xx) и сетевым сбоям с экспоненциальной паузой."""

    retries: int = 3
    backoffSeconds: float = 0.5

    def isTransient(self, status: int) -> bool:
        return status == 429 or status >= 500

    def pause(self, attempt: int) -> None:
        time.sleep(self.backoffSeconds * (2**attempt))


@dataclass(frozen=True)
class HttpReply:
    status: int
    body: Any | None
    snippet: str | None

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299


def _decode(resp: httpx.Response) -> HttpReply:
    text = resp.text
    if not text:
        return HttpReply(resp.status_code, None, None)
    try:
        body: Any = resp.json()
    except ValueError:
        body = text
    return HttpReply(resp.status_code, body, text[:200])


class RestConnectorClient:
    """
    Назначение/ответственность:
        HTTP-транспорт REST-коннектора: аутентификация, TLS, повторы и
        перевод HTTP-статусов в ConnectorError.

    Инварианты/гарантии:
        - Bearer (token) имеет приоритет над Basic (username/password).
        - Повторы выполняются здесь; ошибка после исчерпания повторов
          приходит с retryable=False, чтобы шлюз не повторял её снова.
    """

    def __init__(
        self,
        baseUrl: str,
        resource: str,
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        timeoutSeconds: float = 20.0,
        tlsSkipVerify: bool = False,
        caFile: str | None = None,
        retries: int = 3,
        retryBackoffSeconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.resource = resource
        self.policy = RetryPolicy(retries=retries, backoffSeconds=retryBackoffSeconds)
        self.retry_attempts = 0

        headers = {"accept": "application/json"}
        auth: httpx.Auth | None = None
        if token:
            headers["authorization"] = f"Bearer {token}"
        elif username:
            auth = httpx.BasicAuth(username, password or "")

        self.client = httpx.Client(
            base_url=baseUrl.rstrip("/"),
            headers=headers,
            auth=auth,
            timeout=timeoutSeconds,
            verify=False if tlsSkipVerify else (caFile or True),
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def getRetryAttempts(self) -> int:
        """Сколько повторных попыток выполнено за жизнь клиента."""
        return self.retry_attempts

    def send(self, method: str, path: str, *, params: dict[str, Any] | None = None, json: Any | None = None) -> HttpReply:
        """
        Назначение:
            Запрос с повторами; статус ответа не проверяется.

        Ошибки/исключения:
            ConnectorError(NETWORK_ERROR) если сетевые сбои не прошли за все попытки.
        """
        for attempt in range(self.policy.retries + 1):
            last = attempt >= self.policy.retries
            try:
                resp = self.client.request(method, path, params=params, json=json)
            except httpx.TransportError as exc:
                if last:
                    raise ConnectorError(
                        f"network error on {method} {path}: {exc}",
                        resource=self.resource,
                        code=ErrorCode.NETWORK_ERROR.value,
                        retryable=False,
                    ) from exc
            else:
                if last or not self.policy.isTransient(resp.status_code):
                    return _decode(resp)
            self.retry_attempts += 1
            self.policy.pause(attempt)
        raise AssertionError("unreachable")

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        objectKey: str | None = None,
    ) -> HttpReply:
        """
        Назначение:
            Запрос, для которого ожидается 2xx.

        Ошибки/исключения:
            - ObjectNotFoundError при 404, если передан objectKey (операция над
              конкретным объектом);
            - ConnectorError с кодом по HTTP-статусу для прочих не-2xx.
        """
        reply = self.send(method, path, params=params, json=json)
        if reply.ok:
            return reply
        if reply.status == 404 and objectKey is not None:
            raise ObjectNotFoundError(self.resource, objectKey)
        raise ConnectorError(
            f"HTTP {reply.status} on {method} {path}",
            resource=self.resource,
            code=ErrorCode.from_status(reply.status).value,
            retryable=False,
            details={"status_code": reply.status, "body_snippet": reply.snippet},
        )
