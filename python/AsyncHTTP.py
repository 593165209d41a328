'''
AsyncHTTP - Asynchronous HTTP request queue with callback support

Uses aiohttp for HTTP operations. Every instance owns one worker which
processes queued requests strictly in order, so two instances are needed
for requests that must be in flight at the same time (REST calls and the
event long-poll).

Threading Model:
- Uses asyncio for asynchronous operations
- Callbacks can be both sync and async functions
- All callbacks are executed in the event loop thread
'''

import asyncio
import logging
from typing import Optional, Callable, Any, Dict
from enum import Enum

import aiohttp

from syncthing_utils import invoke_callback


logger = logging.getLogger(__name__)


# Lifecycle of a queued request
class OperationState(Enum):
    '''Operation lifecycle states'''
    CREATED = 'created'          # Operation just created (empty object)
    QUEUED = 'queued'            # Operation enqueued and waiting in queue
    PROCESSING = 'processing'    # Operation picked up by worker and being processed
    DONE = 'done'                # Operation finished, callback is pending/not yet cleaned up


# HTTP error codes, reported in HttpRequest.status when no HTTP status is available
HTTP_ERROR_CLIENT_CLOSED = 16499
HTTP_ERROR_UNKNOWN_EXCEPTION = 16001
HTTP_ERROR_CLIENT_EXCEPTION = 16002
HTTP_ERROR_DISCONNECTED = 16003
HTTP_ERROR_SOCKET_CONNECT_FAILED = 16007
HTTP_ERROR_SOCKET_CONNECT_TIMEOUT = 16008
HTTP_ERROR_SOCKET_IO_TIMEOUT = 16009

HTTP_ERROR_TIMEOUTS = (HTTP_ERROR_SOCKET_CONNECT_TIMEOUT, HTTP_ERROR_SOCKET_IO_TIMEOUT)


class HttpRequest:
    '''Request object passed to user callback'''

    def __init__(self, method: str = 'GET', url: str = ''):
        # HTTP response status code (HTTP_ERROR_* if not available due to error)
        self.status: int = 0

        # Reason phrase of the response, or a short description of the failure
        self.reason: str = ''

        # Response body
        self.body: bytes = b''

        # True if connection and request succeeded, false otherwise
        self.succeeded: bool = False

        # Request URL and HTTP method (GET/POST/...)
        self.url: str = url
        self.method: str = method

        # Operation state for this request lifecycle
        self.state: OperationState = OperationState.CREATED

        # Request headers
        self.headers: Dict[str, str] = {}

        # Optional request body for POST/other methods
        self.data: str = ''

        # User callback to be invoked
        self.callback: Optional[Callable] = None

        # Optional operation name for external tracking
        self.operation_name: str = ''

        # User-provided data (not owned by this class)
        self.user_object: Any = None

        # Internal: cancellation flag
        self._cancelled: bool = False

    @property
    def timed_out(self) -> bool:
        '''True if the request failed because the connect or read timeout expired'''
        return self.status in HTTP_ERROR_TIMEOUTS

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.status == HTTP_ERROR_CLIENT_CLOSED


def create_session() -> aiohttp.ClientSession:
    '''Creates a client session which accepts self-signed certificates'''
    return aiohttp.ClientSession(connector=aiohttp.TCPConnector(ssl=False))


class AsyncHTTP:
    '''
    Asynchronous HTTP requests with queue management

    CALLBACK BEHAVIOR:
    - Request callback is ALWAYS called, even on errors
    - On error: request.status contains HTTP_ERROR_* or the HTTP status and request.succeeded = False
    - On success: request.status contains HTTP status code and request.succeeded = True
    - on_begin_processing is a global handler called for ALL requests before they are sent
      (used to attach authentication headers)
    '''

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        # Timeout settings (in milliseconds)
        self._connect_timeout: int = 0  # 0 means default (no timeout)
        self._io_timeout: int = 0       # 0 means default (no timeout)

        self._queue: asyncio.Queue = asyncio.Queue()

        # Dictionary mapping operation name to request instance
        self._named_requests: Dict[str, HttpRequest] = {}

        self.on_begin_processing: Optional[Callable] = None

        self._retry_count: int = 0
        self._terminated: bool = False
        self._cancelling_in_process: bool = False
        self._is_processing: bool = False

        # Session is shared when given, otherwise created on first request and owned
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session: bool = session is None

        # Current request and its HTTP task (for aborting long-polling)
        self._current_request: Optional[HttpRequest] = None
        self._current_http_task: Optional[asyncio.Task] = None

        self._worker_task: Optional[asyncio.Task] = None
        self._start_worker()

    def _start_worker(self):
        '''Start the worker task'''
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker_loop())

    async def _worker_loop(self):
        '''Main worker loop processing queued requests'''
        # Bound to the queue it was started for, clear_queue() hands a new queue to a new worker
        queue = self._queue
        while not self._terminated:
            try:
                # Wait for request with timeout to check termination flag
                try:
                    request = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                if request is None:  # Poison pill for shutdown
                    break

                # Skip cancelled requests (cleaned by clear_duplicates)
                if request._cancelled:
                    continue

                await self._process_request(request)

            except Exception:
                logger.exception('AsyncHTTP worker loop error')

    async def _process_request(self, request: HttpRequest):
        '''Process a single HTTP request with retry logic'''
        if request._cancelled:
            return

        self._is_processing = True
        self._current_request = request

        try:
            if self.on_begin_processing:
                await invoke_callback(self.on_begin_processing, request, self)

            if self._session is None or self._session.closed:
                self._session = create_session()
                self._owns_session = True

            request.state = OperationState.PROCESSING

            # aiohttp reconnects broken keep-alive sockets internally,
            # so every error type simply gets 1 + retry_count attempts
            attempt = 0
            max_attempts = 1 + self._retry_count

            try:
                while attempt < max_attempts and not request._cancelled:
                    await self._perform_single_attempt(request)

                    if request.succeeded or request._cancelled:
                        break

                    attempt += 1
            except asyncio.CancelledError:
                # Request was cancelled during attempt, continue to callback
                request.status = HTTP_ERROR_CLIENT_CLOSED
                request.succeeded = False

            logger.debug('%s %s -> %s', request.method, request.url, request.status)

            if request.callback:
                await invoke_callback(request.callback, request)

        finally:
            request.state = OperationState.DONE
            self._is_processing = False
            self._current_request = None

            # Remove from named requests ONLY if it's still the same request object
            # (not replaced by a newer request with same name)
            if request.operation_name:
                if self._named_requests.get(request.operation_name) is request:
                    del self._named_requests[request.operation_name]

    async def _do_http_request(self, method: str, url: str, kwargs: dict) -> dict:
        '''
        Perform actual HTTP request
        Returns dict with 'status', 'reason' and 'body' keys
        '''
        if self._session is None or self._session.closed:
            raise RuntimeError('HTTP session is not available')

        async with self._session.request(method, url, **kwargs) as response:
            body = await response.read()
            return {'status': response.status, 'reason': response.reason or '', 'body': body}

    async def _perform_single_attempt(self, request: HttpRequest):
        '''Perform a single HTTP request attempt'''
        request.status = 0
        request.reason = ''
        request.body = b''

        try:
            # aiohttp uses seconds
            timeout = aiohttp.ClientTimeout(
                total=None,
                connect=self._connect_timeout / 1000.0 if self._connect_timeout > 0 else None,
                sock_read=self._io_timeout / 1000.0 if self._io_timeout > 0 else None
            )

            kwargs = {
                'headers': request.headers,
                'timeout': timeout,
                'allow_redirects': True
            }
            if request.data:
                kwargs['data'] = request.data

            # Run as a task so abort_active_connection can interrupt long-polling
            http_task = asyncio.create_task(
                self._do_http_request(request.method, request.url, kwargs)
            )
            self._current_http_task = http_task

            try:
                response_data = await http_task
                request.status = response_data['status']
                request.reason = response_data['reason']
                request.body = response_data['body']
                request.succeeded = 200 <= request.status < 400
            finally:
                if self._current_http_task is http_task:
                    self._current_http_task = None

        except asyncio.CancelledError:
            request.status = HTTP_ERROR_CLIENT_CLOSED
            request.reason = 'Cancelled'
            request.succeeded = False
            request._cancelled = True
            raise  # Re-raise to stop retry loop

        except aiohttp.ServerTimeoutError as e:
            # Subclass of both ClientError and TimeoutError, must come first
            request.status = self._timeout_status(request, e)
            request.reason = 'Timeout'
            request.succeeded = False

        except asyncio.TimeoutError as e:
            request.status = self._timeout_status(request, e)
            request.reason = 'Timeout'
            request.succeeded = False

        except aiohttp.ClientConnectorError as e:
            request.status = HTTP_ERROR_SOCKET_CONNECT_FAILED
            request.reason = str(e) or 'Cannot connect'
            request.succeeded = False

        except aiohttp.ServerDisconnectedError as e:
            request.status = HTTP_ERROR_DISCONNECTED
            request.reason = str(e) or 'Server disconnected'
            request.succeeded = False

        except aiohttp.ClientError as e:
            request.status = HTTP_ERROR_CLIENT_EXCEPTION
            request.reason = str(e) or type(e).__name__
            request.succeeded = False

        except RuntimeError as e:
            # Session closed or other runtime errors
            if 'session' in str(e).lower():
                request.status = HTTP_ERROR_CLIENT_CLOSED
            else:
                request.status = HTTP_ERROR_UNKNOWN_EXCEPTION
            request.reason = str(e)
            request.succeeded = False

        except Exception as e:
            request.status = HTTP_ERROR_UNKNOWN_EXCEPTION
            request.reason = str(e)
            request.succeeded = False
            logger.exception('AsyncHTTP unexpected error')

    def _timeout_status(self, request: HttpRequest, error: Exception) -> int:
        if self._cancelling_in_process or request._cancelled:
            return HTTP_ERROR_CLIENT_CLOSED
        if isinstance(error, aiohttp.ServerTimeoutError) and 'connect' in str(error).lower():
            return HTTP_ERROR_SOCKET_CONNECT_TIMEOUT
        return HTTP_ERROR_SOCKET_IO_TIMEOUT

    def _enqueue_request(self, request: HttpRequest, clear_duplicates: bool = False):
        '''Enqueue a request for processing'''
        self._cancelling_in_process = False

        if request.operation_name:
            if clear_duplicates:
                self._clean_queue_by_operation_name(request.operation_name)
            self._named_requests[request.operation_name] = request

        request.state = OperationState.QUEUED
        self._queue.put_nowait(request)

    def _clean_queue_by_operation_name(self, operation_name: str):
        '''Cancel the queued request with the given operation name'''
        old_request = self._named_requests.pop(operation_name, None)
        if old_request and old_request.state == OperationState.QUEUED:
            old_request._cancelled = True

    # Public API methods

    def request(self, method: str, url: str, callback: Optional[Callable] = None,
                headers: Optional[Dict[str, str]] = None, data: str = '',
                operation_name: str = '', user_object: Any = None,
                clear_duplicates: bool = False) -> HttpRequest:
        '''
        Queue a request

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, etc)
            url: Request URL
            callback: Callback function to invoke when done
            headers: Request headers
            data: Request body
            operation_name: Optional name for tracking
            user_object: User-provided object
            clear_duplicates: Clear pending requests with same operation_name

        Returns:
            The queued request
        '''
        request = HttpRequest(method.upper().strip() or 'GET', url)
        request.headers = dict(headers or {})
        request.data = data
        request.callback = callback
        request.operation_name = operation_name
        request.user_object = user_object

        self._enqueue_request(request, clear_duplicates)
        return request

    def get(self, url: str, callback: Optional[Callable] = None, **kwargs) -> HttpRequest:
        '''Queue a GET request'''
        return self.request('GET', url, callback, **kwargs)

    def post(self, url: str, data: str = '', callback: Optional[Callable] = None, **kwargs) -> HttpRequest:
        '''Queue a POST request'''
        return self.request('POST', url, callback, data=data, **kwargs)

    def abort_active_connection(self):
        '''
        Abort only the current in-flight connection (if any)
        The request callback is called with request.status = HTTP_ERROR_CLIENT_CLOSED
        '''
        if self._current_request:
            self._current_request._cancelled = True

        # Cancelling the HTTP task interrupts long-polling immediately
        if self._current_http_task and not self._current_http_task.done():
            self._current_http_task.cancel()

    def clear_queue(self):
        '''Clear all pending (queued) requests without destroying the instance'''
        old_queue = self._queue
        self._queue = asyncio.Queue()

        old_requests = list(self._named_requests.values())
        self._named_requests.clear()
        for request in old_requests:
            if request.state == OperationState.QUEUED:
                request._cancelled = True

        while not old_queue.empty():
            try:
                request = old_queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if request and request.state == OperationState.QUEUED:
                request._cancelled = True

        # The worker may be blocked on the old queue
        if self._worker_task is not None and not self._worker_task.done():
            old_queue.put_nowait(None)
            self._worker_task = None
            self._start_worker()

    def cancel_all(self):
        '''
        Abort the active connection (if any) and clear the queue
        The active request callback is called with request.status = HTTP_ERROR_CLIENT_CLOSED
        '''
        self._cancelling_in_process = True
        self.clear_queue()
        self.abort_active_connection()

    def request_in_queue(self, operation_name: str) -> bool:
        '''True if operation exists by name, in any state'''
        return operation_name in self._named_requests

    def queue_count(self) -> int:
        '''Number of queued requests'''
        return self._queue.qsize()

    # Properties

    @property
    def connect_timeout(self) -> int:
        '''Connection timeout in milliseconds'''
        return self._connect_timeout

    @connect_timeout.setter
    def connect_timeout(self, value: int):
        self._connect_timeout = value

    @property
    def io_timeout(self) -> int:
        '''I/O timeout in milliseconds'''
        return self._io_timeout

    @io_timeout.setter
    def io_timeout(self, value: int):
        self._io_timeout = value

    @property
    def retry_count(self) -> int:
        '''Number of automatic retries on failure'''
        return self._retry_count

    @retry_count.setter
    def retry_count(self, value: int):
        self._retry_count = value

    @property
    def is_processing(self) -> bool:
        '''True while a request is actively being processed'''
        return self._is_processing

    async def destroy(self):
        '''
        Async cleanup method
        Call this explicitly before program exit for clean shutdown
        '''
        self._terminated = True
        self.cancel_all()

        if self._worker_task:
            self._queue.put_nowait(None)  # Poison pill
            try:
                await asyncio.wait_for(self._worker_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._worker_task.cancel()

        if self._session and self._owns_session:
            await self._session.close()
        self._session = None
