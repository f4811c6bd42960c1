"""Server-rendered PetMood application.

This module provides a small HTTP server for the email gate, photo upload
and analysis, CTA landing pages, and first-party event logging, backed by
a blob store.
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import os
from datetime import datetime, timezone
from http.cookies import SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, unquote, urlencode, urlparse

from python_multipart import parse_form
from python_multipart.exceptions import FormParserError

from .analysis import (
    EmptyUploadError,
    UploadTooLargeError,
    analyze_upload,
    detect_mime,
    list_analyses,
)
from .config import EMAIL_COOKIE_NAME, SESSION_ID_COOKIE_NAME, get_max_upload_bytes
from .email_utils import sanitize_email
from .events import build_event, log_event
from .inference import InferenceClient, InferenceError
from .models import Rejected
from .normalizer import AnalysisFailedError, ResponseNormalizer
from .pages import (
    render_home_page,
    render_join_page,
    render_learn_more_page,
    render_result_page,
)
from .session import (
    clear_email_cookie_header,
    decode_email_cookie,
    email_cookie_header,
    is_valid_session_id,
    new_timestamped_id,
    normalize_next_path,
    session_id_cookie_header,
)
from .storage import BlobStore, LocalBlobStore, StorageError, get_blob_store

logger = logging.getLogger(__name__)

# Room for multipart boundaries and headers on top of the image itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024
ANALYZE_FAILED = "Analyze failed"
NOT_A_PET = "Please upload a clear photo of your pet."


class PetMoodServer(ThreadingHTTPServer):
    """Threaded HTTP server carrying the app's collaborators."""

    daemon_threads = True

    def __init__(
        self,
        server_address,
        handler_class,
        store: BlobStore,
        inference: InferenceClient,
        normalizer: ResponseNormalizer | None = None,
    ) -> None:
        super().__init__(server_address, handler_class)
        self.store = store
        self.inference = inference
        self.normalizer = normalizer or ResponseNormalizer()


class AppHandler(BaseHTTPRequestHandler):
    """HTTP handler for PetMood API and server-rendered pages."""

    server: PetMoodServer

    def _send_json(self, status: int, payload: dict, cookies: list[str] | None = None) -> None:
        """Write a JSON response.

        Args:
            status: HTTP status code.
            payload: JSON-serializable response payload.
            cookies: Optional Set-Cookie header values.

        Returns:
            None.
        """
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        for cookie in cookies or []:
            self.send_header("Set-Cookie", cookie)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_html(self, status: int, body: bytes) -> None:
        """Write an HTML response."""
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _redirect(self, location: str, cookies: list[str] | None = None) -> None:
        self.send_response(303)
        for cookie in cookies or []:
            self.send_header("Set-Cookie", cookie)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _cookie_value(self, key: str) -> str | None:
        """Read a cookie value by key from request headers."""
        raw = self.headers.get("Cookie")
        if not raw:
            return None
        jar = SimpleCookie()
        try:
            jar.load(raw)
        except Exception:
            return None
        morsel = jar.get(key)
        return morsel.value if morsel else None

    def _signed_in_email(self) -> str | None:
        """Resolve the gate email from the signed cookie."""
        return decode_email_cookie(self._cookie_value(EMAIL_COOKIE_NAME))

    def _is_https(self) -> bool:
        return (self.headers.get("X-Forwarded-Proto") or "").strip().lower() == "https"

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            length = 0
        return self.rfile.read(length) if length > 0 else b""

    def _read_json_or_form(self) -> dict:
        """Decode a JSON or urlencoded body into a flat dict."""
        body = self._read_body()
        content_type = (self.headers.get("Content-Type") or "").lower()
        if "application/x-www-form-urlencoded" in content_type:
            form = parse_qs(body.decode("utf-8", "replace"))
            return {key: values[0] for key, values in form.items() if values}
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return payload if isinstance(payload, dict) else {}

    def _wants_json(self) -> bool:
        content_type = (self.headers.get("Content-Type") or "").lower()
        return "application/json" in content_type or "application/json" in (
            self.headers.get("Accept") or ""
        ).lower()

    def _read_upload(self) -> tuple[bytes, str] | None:
        """Parse the multipart body and return the ``image`` part.

        Returns:
            Tuple of image bytes and detected mime type, or ``None`` when no
            usable image part was sent.

        Raises:
            UploadTooLargeError: If the declared body size exceeds the limit.
        """
        content_type = self.headers.get("Content-Type") or ""
        if not content_type.lower().startswith("multipart/form-data"):
            return None
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            return None
        if length <= 0:
            return None
        if length > get_max_upload_bytes() + MULTIPART_OVERHEAD_BYTES:
            raise UploadTooLargeError(f"request body is {length} bytes")

        found: dict = {}
        files: list = []

        def on_field(field) -> None:
            if field.field_name == b"image" and field.value:
                found.setdefault("data", field.value)

        def on_file(file) -> None:
            # The parser still flushes each file once the body ends, so files
            # are closed only after parse_form returns.
            files.append(file)
            if file.field_name != b"image" or "data" in found:
                return
            file.file_object.seek(0)
            found["data"] = file.file_object.read()
            found["filename"] = (file.file_name or b"").decode("utf-8", "replace")

        try:
            parse_form(
                {"Content-Type": content_type, "Content-Length": str(length)},
                self.rfile,
                on_field,
                on_file,
            )
        except (FormParserError, ValueError) as exc:
            logger.info(f"Rejected malformed multipart upload: {exc}")
            self.close_connection = True
            return None
        finally:
            for file in files:
                file.close()

        data = found.get("data") or b""
        if not data:
            return None
        return data, detect_mime(data, found.get("filename"))

    def _run_analysis(self, email: str) -> tuple[int, dict]:
        """Run the upload pipeline and map its outcome to a status and payload."""
        try:
            upload = self._read_upload()
        except UploadTooLargeError:
            self.close_connection = True
            return 413, {"error": "Image too large"}
        if upload is None:
            return 400, {"error": "No image"}
        image, mime = upload

        try:
            outcome = analyze_upload(
                email,
                image,
                mime,
                store=self.server.store,
                inference=self.server.inference,
                normalizer=self.server.normalizer,
            )
        except AnalysisFailedError as exc:
            logger.error(f"Analyze error (unparseable model output): {exc}")
            return 502, {"error": ANALYZE_FAILED}
        except UploadTooLargeError:
            return 413, {"error": "Image too large"}
        except EmptyUploadError:
            return 400, {"error": "No image"}
        except InferenceError as exc:
            logger.error(f"Analyze error (model call): {exc}")
            return 502, {"error": ANALYZE_FAILED}
        except StorageError as exc:
            logger.error(f"Analyze error (storage): {exc}")
            return 500, {"error": ANALYZE_FAILED}

        if isinstance(outcome, Rejected):
            return 400, {"error": outcome.reason or NOT_A_PET, "rejected": True}
        return 200, outcome

    def _ensure_session_id(self) -> tuple[str, list[str]]:
        sid = self._cookie_value(SESSION_ID_COOKIE_NAME)
        if is_valid_session_id(sid):
            return str(sid), []
        sid = new_timestamped_id()
        return sid, [session_id_cookie_header(sid)]

    def _store_signup(self, email: str) -> None:
        """Keep a log entry for each email capture; failures do not block sign-up."""
        record = {
            "email": email,
            "userAgent": self.headers.get("User-Agent") or "unknown",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.server.store.put_json(
                f"emails/{new_timestamped_id(8)}.json", record, add_random_suffix=True
            )
        except StorageError as exc:
            logger.warning(f"Failed to store email log: {exc}")

    def do_GET(self):
        """Handle GET requests for APIs, pages, and local blobs.

        Returns:
            None.
        """
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query)

        if parsed.path in ("/api/health", "/api/analyze"):
            return self._send_json(200, {"ok": True})

        if parsed.path == "/api/my-analyses":
            email = self._signed_in_email()
            if not email:
                return self._send_json(401, {"error": "Email required"})
            try:
                return self._send_json(200, list_analyses(email, self.server.store))
            except StorageError as exc:
                logger.error(f"Failed to load analyses: {exc}")
                return self._send_json(500, {"error": "failed to load analyses"})

        if parsed.path == "/join":
            next_path = normalize_next_path(query.get("next", ["/"])[0])
            body = render_join_page(
                message=query.get("msg", [None])[0],
                next_path=next_path,
                email_value=" ".join(query.get("email", [""])[0].split()),
            )
            return self._send_html(200, body)

        if parsed.path in ("/", "/index.html"):
            email = self._signed_in_email()
            if not email:
                return self._redirect(f"/join?{urlencode({'next': '/'})}")
            return self._send_html(
                200, render_home_page(email, message=query.get("msg", [None])[0])
            )

        if parsed.path.startswith("/learn-more/"):
            variant = unquote(parsed.path[len("/learn-more/"):]).strip("/").lower()
            body = render_learn_more_page(
                variant,
                upload_id=query.get("u", [""])[0],
                message=query.get("msg", [None])[0],
            )
            return self._send_html(200, body)

        if parsed.path.startswith("/blobs/") and isinstance(self.server.store, LocalBlobStore):
            key = unquote(parsed.path[len("/blobs/"):])
            try:
                data = self.server.store.get(key)
            except StorageError:
                return self.send_error(404, "Not Found")
            content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
            self.send_response(200)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)
            return

        self.send_error(404, "Not Found")

    def do_POST(self):
        """Handle POST requests for sign-up, uploads, and events.

        Returns:
            None.
        """
        parsed = urlparse(self.path)

        if parsed.path == "/api/session":
            wants_json = self._wants_json()
            payload = self._read_json_or_form()
            email_raw = str(payload.get("email") or "")
            email = sanitize_email(email_raw)
            next_path = normalize_next_path(str(payload.get("next") or "/"))
            if not email:
                if wants_json:
                    return self._send_json(400, {"error": "Valid email required"})
                query = urlencode(
                    {
                        "msg": "Enter a valid email address.",
                        "next": next_path,
                        "email": " ".join(email_raw.split()),
                    }
                )
                return self._redirect(f"/join?{query}")

            self._store_signup(email)
            cookie = email_cookie_header(email, secure=self._is_https())
            if wants_json:
                return self._send_json(200, {"ok": True}, cookies=[cookie])
            return self._redirect(next_path, cookies=[cookie])

        if parsed.path == "/signout":
            form = self._read_json_or_form()
            next_path = normalize_next_path(str(form.get("next") or "/join"), "/join")
            return self._redirect(next_path, cookies=[clear_email_cookie_header()])

        if parsed.path == "/api/analyze":
            email = self._signed_in_email()
            if not email:
                return self._send_json(401, {"error": "Email required"})
            status, payload = self._run_analysis(email)
            return self._send_json(status, payload)

        if parsed.path == "/analyze":
            email = self._signed_in_email()
            if not email:
                return self._redirect(f"/join?{urlencode({'next': '/'})}")
            status, payload = self._run_analysis(email)
            if status != 200:
                return self._redirect(f"/?{urlencode({'msg': payload.get('error') or ANALYZE_FAILED})}")
            return self._send_html(200, render_result_page(payload))

        if parsed.path == "/api/event":
            sid, cookies = self._ensure_session_id()
            payload = self._read_json_or_form()
            event = build_event(payload, sid, self.headers.get("User-Agent"))
            try:
                log_event(self.server.store, event)
            except StorageError as exc:
                logger.error(f"Event log error: {exc}")
                return self._send_json(500, {"ok": False}, cookies=cookies)
            return self._send_json(200, {"ok": True}, cookies=cookies)

        if parsed.path.startswith("/learn-more/"):
            variant = unquote(parsed.path[len("/learn-more/"):]).strip("/").lower()
            form = self._read_json_or_form()
            upload_id = str(form.get("u") or "")
            price = str(form.get("price") or "")
            params = {"u": upload_id}
            if price:
                sid, cookies = self._ensure_session_id()
                event = build_event(
                    {"type": "WTP_Select", "variant": variant, "price": price, "uploadId": upload_id},
                    sid,
                    self.headers.get("User-Agent"),
                )
                try:
                    log_event(self.server.store, event)
                    params["msg"] = "Thanks for the feedback!"
                except StorageError as exc:
                    logger.error(f"Event log error: {exc}")
                    params["msg"] = "Could not save your answer. Please try again."
                return self._redirect(f"{parsed.path}?{urlencode(params)}", cookies=cookies)
            params["msg"] = "Select an option first."
            return self._redirect(f"{parsed.path}?{urlencode(params)}")

        self.send_error(404, "Not Found")

    def do_DELETE(self):
        """Handle sign-out through the session API."""
        if urlparse(self.path).path != "/api/session":
            return self.send_error(404, "Not Found")
        return self._send_json(200, {"ok": True}, cookies=[clear_email_cookie_header()])

    def log_message(self, fmt, *args):
        """Route default HTTP request logging to the module logger.

        Args:
            fmt: Log format string.
            *args: Format arguments.

        Returns:
            None.
        """
        logger.debug(f"{self.address_string()} {fmt % args}")


def main() -> None:
    """Run the PetMood HTTP server from CLI arguments.

    Returns:
        None.
    """
    log_level = (os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    parser = argparse.ArgumentParser(description="Serve PetMood web app")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    store = get_blob_store()
    server = PetMoodServer((args.host, args.port), AppHandler, store=store, inference=InferenceClient())
    logger.info(f"PetMood running at http://{args.host}:{args.port} (store={type(store).__name__})")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
