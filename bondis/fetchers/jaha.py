from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, List, Optional, Sequence

import requests

from ..models import RawPosition


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.jaha.com.py"
POSITIONS_PATH = "/api/posicionColectivos"
LINES_PATH = "/bus/lineas"

REQUEST_TIMEOUT_SECONDS = 10
MAX_RESPONSE_BYTES = 1024 * 1024
CHUNK_SIZE = 8192


class FetchError(RuntimeError):
    kind = "fetch"

    def __init__(self, message: str, line_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.line_id = line_id


class FetchTransportError(FetchError):
    kind = "transport"


class FetchStatusError(FetchError):
    kind = "status"

    def __init__(self, message: str, status_code: int, line_id: Optional[int] = None) -> None:
        super().__init__(message, line_id)
        self.status_code = status_code


class FetchPayloadError(FetchError):
    kind = "payload"


class FetchTooLargeError(FetchError):
    kind = "too_large"


def _coordinate_text(value: Any) -> str:
    # JSON floats are decoded as their source text, so no digits are rewritten.
    if isinstance(value, bool):
        raise ValueError("boolean coordinate")
    if isinstance(value, (Decimal, int)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValueError(f"invalid coordinate: {value!r}")


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean id")
    if isinstance(value, int):
        return value
    if isinstance(value, (Decimal, str)):
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"invalid integer id: {value!r}") from exc
        if number.is_finite() and number == number.to_integral_value():
            return int(number)
    raise ValueError(f"invalid integer id: {value!r}")


def parse_positions(payload: Any, line_id: Optional[int] = None) -> List[RawPosition]:
    """Validate a decoded ``{"positions": [...]}`` payload.

    Any malformed element rejects the whole batch so a line is never
    partially ingested.
    """

    if not isinstance(payload, dict):
        raise FetchPayloadError("Positions response root is not an object.", line_id)
    positions = payload.get("positions")
    if not isinstance(positions, list):
        raise FetchPayloadError("Positions response missing positions list.", line_id)

    results: List[RawPosition] = []
    for index, position in enumerate(positions):
        try:
            if not isinstance(position, dict):
                raise TypeError("position entry is not an object")
            raw_vehicle = position["vehicleId"] if "vehicleId" in position else position["unidad"]
            hora = position["hora"]
            if not isinstance(hora, str) or not hora.strip():
                raise ValueError(f"invalid hora: {hora!r}")
            results.append(
                RawPosition(
                    vehicle_id=_as_int(raw_vehicle),
                    lat=_coordinate_text(position["lat"]),
                    lon=_coordinate_text(position["lon"]),
                    hora=hora.strip(),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise FetchPayloadError(
                f"Malformed position entry at index {index}: {exc}", line_id
            ) from exc
    return results


def parse_lines(payload: Any) -> List[int]:
    if not isinstance(payload, list):
        raise FetchPayloadError("Line catalogue response is not a list.")
    lines: List[int] = []
    for entry in payload:
        raw_id = entry.get("id") if isinstance(entry, dict) else None
        try:
            line_id = _as_int(raw_id)
        except ValueError:
            logger.warning("Skipping line catalogue entry without a usable id: %r", entry)
            continue
        if line_id > 0 and line_id not in lines:
            lines.append(line_id)
    return lines


class SourceClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        max_response_bytes: int = MAX_RESPONSE_BYTES,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_response_bytes = max_response_bytes
        self.session = session or requests.Session()
        self.clock = clock

    def fetch_positions(self, line_id: int) -> List[RawPosition]:
        if isinstance(line_id, bool) or not isinstance(line_id, int) or line_id <= 0:
            raise ValueError(f"Line id must be a positive integer, got {line_id!r}")
        payload = self._get_json(POSITIONS_PATH, {"linea": line_id}, line_id)
        return parse_positions(payload, line_id)

    def fetch_lines(self) -> List[int]:
        return parse_lines(self._get_json(LINES_PATH, None, None))

    def close(self) -> None:
        self.session.close()

    def _get_json(self, path: str, params: Optional[dict], line_id: Optional[int]) -> Any:
        url = f"{self.base_url}{path}"
        # requests applies its timeout per socket read; this bounds the whole request.
        deadline = self.clock() + self.timeout_seconds
        try:
            response = self.session.get(
                url,
                params=params,
                timeout=self.timeout_seconds,
                stream=True,
            )
        except requests.RequestException as exc:
            raise FetchTransportError(f"Failed to fetch {url}: {exc}", line_id) from exc

        try:
            try:
                response.raise_for_status()
            except requests.HTTPError as exc:
                raise FetchStatusError(
                    f"Upstream returned HTTP {response.status_code} for {url}.",
                    response.status_code,
                    line_id,
                ) from exc
            body = self._read_body(response, url, line_id, deadline)
        finally:
            response.close()

        try:
            return json.loads(body, parse_float=str)
        except ValueError as exc:
            raise FetchPayloadError(f"Response from {url} was not valid JSON.", line_id) from exc

    def _read_body(
        self,
        response: requests.Response,
        url: str,
        line_id: Optional[int],
        deadline: float,
    ) -> bytes:
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > self.max_response_bytes:
            raise FetchTooLargeError(
                f"Response from {url} declares {declared} bytes (limit {self.max_response_bytes}).",
                line_id,
            )

        body = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > self.max_response_bytes:
                    raise FetchTooLargeError(
                        f"Response from {url} exceeded {self.max_response_bytes} bytes.",
                        line_id,
                    )
                if self.clock() > deadline:
                    raise FetchTransportError(
                        f"Response from {url} took longer than {self.timeout_seconds}s.",
                        line_id,
                    )
        except requests.RequestException as exc:
            raise FetchTransportError(f"Failed reading {url}: {exc}", line_id) from exc
        return bytes(body)


def _print_positions(line_id: int, positions: Iterable[RawPosition]) -> None:
    positions = list(positions)
    print(f"Line {line_id}: {len(positions)} vehicles")
    print("=" * 54)
    for position in positions:
        print(f"  unidad {position.vehicle_id:>5}  {position.lat}, {position.lon}  @ {position.hora}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fetch live bus positions from the Jaha API.")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--line", type=int, help="Line id to fetch positions for.")
    group.add_argument("--lines", action="store_true", help="List the upstream line catalogue.")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    parser.add_argument("--timeout", type=float, default=REQUEST_TIMEOUT_SECONDS)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    client = SourceClient(base_url=args.base_url, timeout_seconds=args.timeout)
    try:
        if args.lines:
            lines = client.fetch_lines()
            print(f"Found {len(lines)} lines: {', '.join(str(line) for line in lines)}")
        else:
            _print_positions(args.line, client.fetch_positions(args.line))
    except (FetchError, ValueError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except KeyboardInterrupt:
        print("\n[ERROR] Interrupted by user.")
        return 1
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
