"""Concrete proxies for the remote browser object model.

Each class translates the driver's event frames into EventType
notifications carrying proxies (or small value objects) as payloads, and
derives its ``wait_for_*`` methods from ChannelOwner.wait_for_event by
fixing the event type and the payload filter.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from browserwire.channel_owner import ChannelOwner
from browserwire.error import (
    BrowserWireError,
    ProtocolError,
    TargetClosedError,
    is_safe_close_error,
)
from browserwire.listeners import EventType
from browserwire.timeouts import TimeoutSettings
from browserwire.waits import (
    Action,
    Predicate,
    UrlMatcher,
    WaitFailure,
    closed_error,
    wait_for_timeout,
)

logger = logging.getLogger(__name__)

UrlFilter = str | re.Pattern[str] | Callable[[Any], bool] | None


def _resolve(owner: ChannelOwner, ref: Any) -> ChannelOwner | None:
    """Resolve a ``{"guid": ...}`` reference through the owner's connection."""
    if not isinstance(ref, dict) or "guid" not in ref:
        return None
    return owner.connection.find_object(ref["guid"])


def _url_predicate(url: UrlFilter) -> Predicate:
    """Predicate over objects with a ``url`` attribute.

    A callable receives the object itself; anything else is matched against
    the object's URL.
    """
    if callable(url) and not isinstance(url, str):
        return url
    matcher = UrlMatcher.for_one_of(url)
    return lambda obj: matcher.test(obj.url)


class RemoteBrowser(ChannelOwner):
    """Object announcing a remote browser session."""

    def browser(self) -> Browser:
        ref = self.initializer.get("browser") or self.initializer.get("preLaunchedBrowser")
        browser = _resolve(self, ref)
        if not isinstance(browser, Browser):
            raise ProtocolError("Malformed endpoint: no browser announced")
        return browser


class Browser(ChannelOwner):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._contexts: list[BrowserContext] = []
        self._is_connected = True

    @property
    def name(self) -> str:
        return self.initializer.get("name", "")

    @property
    def version(self) -> str:
        return self.initializer.get("version", "")

    def contexts(self) -> list[BrowserContext]:
        return list(self._contexts)

    def is_connected(self) -> bool:
        return self._is_connected

    async def new_context(self, **options: Any) -> BrowserContext:
        result = await self.send("newContext", options)
        context = _resolve(self, result.get("context") if isinstance(result, dict) else None)
        if not isinstance(context, BrowserContext):
            raise ProtocolError("newContext did not return a context")
        return context

    async def close(self) -> None:
        try:
            await self.send("close")
        except BrowserWireError as e:
            if not is_safe_close_error(e):
                raise

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "close":
            self._did_close()
        else:
            super().handle_event(method, params)

    def _did_close(self) -> None:
        if not self._is_connected:
            return
        self._is_connected = False
        self.emit(EventType.DISCONNECTED, self)

    def _on_dispose(self) -> None:
        self._did_close()

    async def wait_for_disconnected(
        self,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Browser:
        return await self.wait_for_event(EventType.DISCONNECTED, timeout=timeout, action=action)


class BrowserContext(ChannelOwner):
    """An isolated browser session (cookies, storage, pages)."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pages: list[Page] = []
        self._closed = False
        parent = self.parent
        self._timeout_settings = TimeoutSettings(
            parent.timeout_settings if parent is not None else None
        )

    @property
    def timeout_settings(self) -> TimeoutSettings:
        return self._timeout_settings

    @property
    def browser(self) -> Browser | None:
        parent = self.parent
        return parent if isinstance(parent, Browser) else None

    def pages(self) -> list[Page]:
        return list(self._pages)

    def set_default_timeout(self, timeout: float) -> None:
        self._timeout_settings.default_timeout = timeout
        self.send_no_reply("setDefaultTimeoutNoReply", {"timeout": timeout})

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self._timeout_settings.default_navigation_timeout = timeout
        self.send_no_reply("setDefaultNavigationTimeoutNoReply", {"timeout": timeout})

    async def new_page(self) -> Page:
        result = await self.send("newPage")
        page = _resolve(self, result.get("page") if isinstance(result, dict) else None)
        if not isinstance(page, Page):
            raise ProtocolError("newPage did not return a page")
        return page

    async def close(self) -> None:
        try:
            await self.send("close")
        except BrowserWireError as e:
            if not is_safe_close_error(e):
                raise

    def _on_created(self) -> None:
        browser = self.browser
        if browser is not None:
            browser._contexts.append(self)

    def _on_dispose(self) -> None:
        browser = self.browser
        if browser is not None and self in browser._contexts:
            browser._contexts.remove(self)

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "page":
            page = _resolve(self, params.get("page"))
            if isinstance(page, Page):
                if page not in self._pages:
                    self._pages.append(page)
                self.emit(EventType.PAGE, page)
        elif method == "close":
            if not self._closed:
                self._closed = True
                self.emit(EventType.CLOSE, self)
        else:
            super().handle_event(method, params)

    def wait_failures(self) -> list[WaitFailure]:
        failures = super().wait_failures()
        failures.append(
            WaitFailure(self.listeners, EventType.CLOSE, closed_error("Context closed"))
        )
        return failures

    async def wait_for_page(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Page:
        return await self.wait_for_event(EventType.PAGE, predicate, timeout, action)

    async def wait_for_close(
        self,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> BrowserContext:
        return await self.wait_for_event(EventType.CLOSE, timeout=timeout, action=action)


class Page(ChannelOwner):
    """A browser tab."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._is_closed = bool(self.initializer.get("isClosed", False))
        self._frames: list[Frame] = []
        self._workers: list[Worker] = []
        parent = self.parent
        self._timeout_settings = TimeoutSettings(
            parent.timeout_settings if parent is not None else None
        )

    @property
    def timeout_settings(self) -> TimeoutSettings:
        return self._timeout_settings

    @property
    def context(self) -> BrowserContext | None:
        parent = self.parent
        return parent if isinstance(parent, BrowserContext) else None

    @property
    def main_frame(self) -> Frame | None:
        frame = _resolve(self, self.initializer.get("mainFrame"))
        return frame if isinstance(frame, Frame) else None

    @property
    def url(self) -> str:
        frame = self.main_frame
        return frame.url if frame is not None else ""

    def frames(self) -> list[Frame]:
        return list(self._frames)

    def workers(self) -> list[Worker]:
        return list(self._workers)

    def is_closed(self) -> bool:
        return self._is_closed

    def set_default_timeout(self, timeout: float) -> None:
        self._timeout_settings.default_timeout = timeout
        self.send_no_reply("setDefaultTimeoutNoReply", {"timeout": timeout})

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self._timeout_settings.default_navigation_timeout = timeout
        self.send_no_reply("setDefaultNavigationTimeoutNoReply", {"timeout": timeout})

    async def close(self, run_before_unload: bool = False) -> None:
        """Close the page. Errors saying the page is already gone are ignored."""
        try:
            await self.send("close", {"runBeforeUnload": run_before_unload})
        except BrowserWireError as e:
            if not is_safe_close_error(e):
                raise

    # -------------------------------------------------------------------------
    # Lifecycle and events
    # -------------------------------------------------------------------------

    def _on_created(self) -> None:
        frame = self.main_frame
        if frame is not None:
            frame._page = self
            self._frames.append(frame)
        context = self.context
        if context is not None and self not in context._pages:
            context._pages.append(self)

    def _on_dispose(self) -> None:
        self._is_closed = True
        self._detach_from_context()

    def _detach_from_context(self) -> None:
        context = self.context
        if context is not None and self in context._pages:
            context._pages.remove(self)

    def _did_close(self) -> None:
        if self._is_closed:
            return
        self._is_closed = True
        self._detach_from_context()
        self.emit(EventType.CLOSE, self)

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        event = EventType.for_method(method)
        if event is EventType.CLOSE:
            self._did_close()
        elif event in (EventType.CRASH, EventType.LOAD, EventType.DOMCONTENTLOADED):
            self.emit(event, self)
        elif event is EventType.FRAMEATTACHED:
            frame = _resolve(self, params.get("frame"))
            if isinstance(frame, Frame):
                frame._page = self
                self._frames.append(frame)
                self.emit(event, frame)
        elif event is EventType.FRAMEDETACHED:
            frame = _resolve(self, params.get("frame"))
            if isinstance(frame, Frame):
                frame._detached = True
                if frame in self._frames:
                    self._frames.remove(frame)
                self.emit(event, frame)
        elif event is EventType.PAGEERROR:
            self.emit(event, BrowserWireError.from_wire(params))
        elif event is EventType.FILECHOOSER:
            element = _resolve(self, params.get("element"))
            self.emit(event, FileChooser(self, element, bool(params.get("isMultiple"))))
        elif event is EventType.WORKER:
            worker = _resolve(self, params.get("worker"))
            if isinstance(worker, Worker):
                worker._page = self
                self._workers.append(worker)
                self.emit(event, worker)
        elif event is not None and event in _PAGE_OBJECT_EVENTS:
            target = _resolve(self, params.get(_PAGE_OBJECT_EVENTS[event]))
            if target is None:
                logger.warning("%r: %s event without a target object", self, method)
                return
            self.emit(event, target)
        else:
            super().handle_event(method, params)

    def _frame_navigated(self, frame: Frame) -> None:
        self.emit(EventType.FRAMENAVIGATED, frame)

    # -------------------------------------------------------------------------
    # Waits
    # -------------------------------------------------------------------------

    def wait_failures(self) -> list[WaitFailure]:
        failures = super().wait_failures()
        failures.append(
            WaitFailure(self.listeners, EventType.CLOSE, closed_error("Page closed"))
        )
        failures.append(
            WaitFailure(
                self.listeners,
                EventType.CRASH,
                lambda _: TargetClosedError("Page crashed"),
            )
        )
        return failures

    async def wait_for_close(
        self,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Page:
        return await self.wait_for_event(EventType.CLOSE, timeout=timeout, action=action)

    async def wait_for_console_message(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> ConsoleMessage:
        return await self.wait_for_event(EventType.CONSOLE, predicate, timeout, action)

    async def wait_for_download(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Download:
        return await self.wait_for_event(EventType.DOWNLOAD, predicate, timeout, action)

    async def wait_for_file_chooser(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> FileChooser:
        return await self.wait_for_event(EventType.FILECHOOSER, predicate, timeout, action)

    async def wait_for_popup(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Page:
        return await self.wait_for_event(EventType.POPUP, predicate, timeout, action)

    async def wait_for_request(
        self,
        url_or_predicate: UrlFilter = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Request:
        """Wait for a request whose URL matches a glob, a regex or a predicate."""
        return await self.wait_for_event(
            EventType.REQUEST, _url_predicate(url_or_predicate), timeout, action
        )

    async def wait_for_response(
        self,
        url_or_predicate: UrlFilter = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Response:
        return await self.wait_for_event(
            EventType.RESPONSE, _url_predicate(url_or_predicate), timeout, action
        )

    async def wait_for_websocket(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> WebSocket:
        return await self.wait_for_event(EventType.WEBSOCKET, predicate, timeout, action)

    async def wait_for_worker(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Worker:
        return await self.wait_for_event(EventType.WORKER, predicate, timeout, action)

    async def wait_for_frame_navigated(
        self,
        url: UrlFilter = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Frame:
        return await self.wait_for_event(
            EventType.FRAMENAVIGATED, _url_predicate(url), timeout, action
        )

    async def wait_for_timeout(self, timeout: float) -> None:
        await wait_for_timeout(timeout)


# Page events whose payload is a proxy referenced by the given param
_PAGE_OBJECT_EVENTS = {
    EventType.CONSOLE: "message",
    EventType.DIALOG: "dialog",
    EventType.DOWNLOAD: "download",
    EventType.POPUP: "page",
    EventType.REQUEST: "request",
    EventType.REQUESTFAILED: "request",
    EventType.REQUESTFINISHED: "request",
    EventType.RESPONSE: "response",
    EventType.WEBSOCKET: "webSocket",
}


class Frame(ChannelOwner):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._url: str = self.initializer.get("url", "")
        self._name: str = self.initializer.get("name", "")
        parent = self.parent
        self._page: Page | None = parent if isinstance(parent, Page) else None
        self._detached = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def name(self) -> str:
        return self._name

    @property
    def page(self) -> Page | None:
        return self._page

    @property
    def timeout_settings(self) -> TimeoutSettings:
        """The page's timeout chain once the frame is attached to a page."""
        if self._page is not None:
            return self._page.timeout_settings
        return super().timeout_settings

    @property
    def parent_frame(self) -> Frame | None:
        frame = _resolve(self, self.initializer.get("parentFrame"))
        return frame if isinstance(frame, Frame) else None

    def is_detached(self) -> bool:
        return self._detached

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "navigated":
            self._url = params.get("url", self._url)
            self._name = params.get("name", self._name)
            self.emit(EventType.FRAMENAVIGATED, params)
            if "error" not in params and self._page is not None:
                self._page._frame_navigated(self)
        else:
            super().handle_event(method, params)

    def wait_failures(self) -> list[WaitFailure]:
        failures = super().wait_failures()
        if self._page is not None:
            failures.extend(self._page.wait_failures())
        return failures

    async def wait_for_navigated(
        self,
        url: UrlFilter = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> dict[str, Any]:
        """Wait for this frame to navigate; returns the raw navigation params."""
        if callable(url) and not isinstance(url, str):
            predicate = url
        else:
            matcher = UrlMatcher.for_one_of(url)
            predicate = lambda params: matcher.test(params.get("url", ""))  # noqa: E731
        timeout = self.timeout_settings.navigation_timeout(timeout)
        return await self.wait_for_event(EventType.FRAMENAVIGATED, predicate, timeout, action)


class Request(ChannelOwner):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.redirected_to: Request | None = None

    @property
    def url(self) -> str:
        return self.initializer.get("url", "")

    @property
    def method(self) -> str:
        return self.initializer.get("method", "GET")

    @property
    def headers(self) -> dict[str, str]:
        return {h["name"].lower(): h["value"] for h in self.initializer.get("headers", [])}

    @property
    def post_data(self) -> str | None:
        data = self.initializer.get("postData")
        if data is None:
            return None
        return base64.b64decode(data).decode()

    @property
    def resource_type(self) -> str:
        return self.initializer.get("resourceType", "")

    @property
    def redirected_from(self) -> Request | None:
        request = _resolve(self, self.initializer.get("redirectedFrom"))
        return request if isinstance(request, Request) else None

    def frame(self) -> Frame | None:
        frame = _resolve(self, self.initializer.get("frame"))
        return frame if isinstance(frame, Frame) else None

    def is_navigation_request(self) -> bool:
        return bool(self.initializer.get("isNavigationRequest", False))

    async def response(self) -> Response | None:
        result = await self.send("response")
        response = _resolve(self, result.get("response") if isinstance(result, dict) else None)
        return response if isinstance(response, Response) else None

    def _on_created(self) -> None:
        previous = self.redirected_from
        if previous is not None:
            previous.redirected_to = self


class Response(ChannelOwner):
    @property
    def url(self) -> str:
        return self.initializer.get("url", "")

    @property
    def status(self) -> int:
        return int(self.initializer.get("status", 0))

    @property
    def status_text(self) -> str:
        return self.initializer.get("statusText", "")

    @property
    def ok(self) -> bool:
        return self.status == 0 or 200 <= self.status <= 299

    @property
    def headers(self) -> dict[str, str]:
        return {h["name"].lower(): h["value"] for h in self.initializer.get("headers", [])}

    def request(self) -> Request:
        request = _resolve(self, self.initializer.get("request"))
        if not isinstance(request, Request):
            raise ProtocolError(f"Response {self.guid} has no request")
        return request

    def frame(self) -> Frame | None:
        return self.request().frame()

    async def body(self) -> bytes:
        result = await self.send("body")
        return base64.b64decode(result["binary"])

    async def text(self) -> str:
        return (await self.body()).decode()


@dataclass(frozen=True, slots=True)
class WebSocketFrame:
    """A frame sent or received by a page's WebSocket.

    Binary frames (opcode 2) arrive base64 encoded.
    """

    payload: bytes

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> WebSocketFrame:
        data = params.get("data", "")
        if params.get("opcode") == 2:
            return cls(base64.b64decode(data))
        return cls(data.encode())

    @property
    def binary(self) -> bytes:
        return self.payload

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


class WebSocket(ChannelOwner):
    """A WebSocket opened by a page."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._is_closed = False

    @property
    def url(self) -> str:
        return self.initializer.get("url", "")

    @property
    def page(self) -> Page | None:
        parent = self.parent
        return parent if isinstance(parent, Page) else None

    def is_closed(self) -> bool:
        return self._is_closed

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "frameSent":
            self.emit(EventType.FRAMESENT, WebSocketFrame.from_params(params))
        elif method == "frameReceived":
            self.emit(EventType.FRAMERECEIVED, WebSocketFrame.from_params(params))
        elif method == "socketError":
            self.emit(EventType.SOCKETERROR, params.get("error", ""))
        elif method == "close":
            self._is_closed = True
            self.emit(EventType.CLOSE, self)
        else:
            super().handle_event(method, params)

    def wait_failures(self) -> list[WaitFailure]:
        failures = super().wait_failures()
        failures.append(
            WaitFailure(self.listeners, EventType.CLOSE, closed_error("Socket closed"))
        )
        failures.append(
            WaitFailure(
                self.listeners,
                EventType.SOCKETERROR,
                lambda error: ProtocolError(f"Socket error: {error}" if error else "Socket error"),
            )
        )
        page = self.page
        if page is not None:
            failures.extend(page.wait_failures())
        return failures

    async def wait_for_frame_sent(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> WebSocketFrame:
        return await self.wait_for_event(EventType.FRAMESENT, predicate, timeout, action)

    async def wait_for_frame_received(
        self,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> WebSocketFrame:
        return await self.wait_for_event(EventType.FRAMERECEIVED, predicate, timeout, action)


class Worker(ChannelOwner):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        parent = self.parent
        self._page: Page | None = parent if isinstance(parent, Page) else None

    @property
    def url(self) -> str:
        return self.initializer.get("url", "")

    @property
    def page(self) -> Page | None:
        return self._page

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        result = await self.send(
            "evaluateExpression", {"expression": expression, "arg": arg}
        )
        return result.get("value") if isinstance(result, dict) else result

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "close":
            if self._page is not None and self in self._page._workers:
                self._page._workers.remove(self)
            self.emit(EventType.CLOSE, self)
        else:
            super().handle_event(method, params)

    def wait_failures(self) -> list[WaitFailure]:
        failures = super().wait_failures()
        if self._page is not None:
            failures.extend(self._page.wait_failures())
        return failures

    async def wait_for_close(
        self,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Worker:
        return await self.wait_for_event(EventType.CLOSE, timeout=timeout, action=action)


class Download(ChannelOwner):
    @property
    def url(self) -> str:
        return self.initializer.get("url", "")

    @property
    def suggested_filename(self) -> str:
        return self.initializer.get("suggestedFilename", "")

    async def path(self) -> str:
        result = await self.send("pathAfterFinished")
        return result["value"]

    async def failure(self) -> str | None:
        result = await self.send("failure")
        return result.get("error") if isinstance(result, dict) else None


class ConsoleMessage(ChannelOwner):
    @property
    def message_type(self) -> str:
        return self.initializer.get("type", "")

    @property
    def text(self) -> str:
        return self.initializer.get("text", "")

    @property
    def location(self) -> dict[str, Any]:
        return self.initializer.get("location", {})

    def __str__(self) -> str:
        return self.text


class Dialog(ChannelOwner):
    @property
    def dialog_type(self) -> str:
        return self.initializer.get("type", "")

    @property
    def message(self) -> str:
        return self.initializer.get("message", "")

    @property
    def default_value(self) -> str:
        return self.initializer.get("defaultValue", "")

    async def accept(self, prompt_text: str | None = None) -> None:
        params = {} if prompt_text is None else {"promptText": prompt_text}
        await self.send("accept", params)

    async def dismiss(self) -> None:
        await self.send("dismiss")


@dataclass(frozen=True, slots=True)
class FileChooser:
    page: Page
    element: ChannelOwner | None
    is_multiple: bool


BUILTIN_TYPES: dict[str, type[ChannelOwner]] = {
    "RemoteBrowser": RemoteBrowser,
    "Browser": Browser,
    "BrowserContext": BrowserContext,
    "Page": Page,
    "Frame": Frame,
    "Request": Request,
    "Response": Response,
    "WebSocket": WebSocket,
    "Worker": Worker,
    "Download": Download,
    "ConsoleMessage": ConsoleMessage,
    "Dialog": Dialog,
}
