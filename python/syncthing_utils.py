'''
Event loop helpers shared by the Syncthing modules

- Timer: cancelable, optionally recurring deferred callback (asyncio task)
- Signal: observer slot, handlers receive the sender as first argument
- invoke_callback / invoke_callback_sync: call sync or async callbacks alike
'''

import asyncio
import logging
from typing import Optional, Callable, List


logger = logging.getLogger(__name__)

LOG_FORMAT = '[%(name)s:%(levelname)s] %(message)s'


def configure_logging(level: int = logging.INFO):
    '''Install a stream handler on the root logger, for hosts which have no logging setup'''
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)


def invoke_callback_sync(callback: Callable, *args):
    '''Invoke callback synchronously (for both sync and async functions)'''
    if asyncio.iscoroutinefunction(callback):
        # Schedule async callback
        return asyncio.create_task(callback(*args))
    # Call sync callback directly
    return callback(*args)


async def invoke_callback(callback: Callable, *args):
    '''Invoke callback asynchronously (for both sync and async functions)'''
    if asyncio.iscoroutinefunction(callback):
        return await callback(*args)
    return callback(*args)


class Signal:
    '''
    Observer slot

    Handlers are called in connection order. A handler may disconnect itself
    (or others) while the signal is being emitted. Exceptions raised by a
    handler are logged and do not stop the remaining handlers.
    '''

    def __init__(self, name: str = ''):
        self.name = name
        self._handlers: List[Callable] = []

    def connect(self, handler: Callable) -> Callable:
        '''Subscribe handler, returns it for later disconnect'''
        self._handlers.append(handler)
        return handler

    def disconnect(self, handler: Callable):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def clear(self):
        self._handlers.clear()

    def emit(self, *args):
        for handler in list(self._handlers):
            try:
                invoke_callback_sync(handler, *args)
            except Exception:
                logger.exception('Signal %s handler failed', self.name)

    def __len__(self) -> int:
        return len(self._handlers)


class Timer:
    '''
    Cancelable deferred callback

    run() cancels a pending invocation before scheduling a new one. A recurring
    timer schedules the next tick only after the callback returned, so a slow
    callback delays the next tick instead of overlapping it.
    '''

    def __init__(self, timeout_ms: int = 0, recurring: bool = False):
        self._timeout: int = timeout_ms
        self._recurring: bool = recurring
        self._task: Optional[asyncio.Task] = None

    def run(self, callback: Callable, timeout: Optional[int] = None,
            recurring: Optional[bool] = None):
        '''Schedule callback after timeout milliseconds (defaults from constructor)'''
        self.cancel()
        if timeout is None:
            timeout = self._timeout
        if recurring is None:
            recurring = self._recurring
        self._task = asyncio.create_task(self._timer_loop(timeout / 1000.0, recurring, callback))

    def cancel(self):
        '''Cancel pending invocation, safe when nothing is scheduled'''
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # Called from inside the callback: the loop sees the reset handle and stops
        if task is not current:
            task.cancel()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def timeout(self) -> int:
        return self._timeout

    async def _timer_loop(self, interval_sec: float, recurring: bool, callback: Callable):
        '''Timer loop that calls callback after interval'''
        task = asyncio.current_task()
        try:
            while True:
                await asyncio.sleep(interval_sec)
                try:
                    await invoke_callback(callback)
                except Exception:
                    logger.exception('Timer callback failed')
                if not recurring or self._task is not task:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            if self._task is task:
                self._task = None
