# fibernet

fibernet is a small toolkit for writing cooperative network servers in pure
Python. It has no dependencies outside the standard library and targets POSIX
systems.

## Parts

- `fibernet.fiber`: `Fiber` and `FiberState`. A fiber runs a callback and can
  be resumed (`resume()`), can give control back (`yield_control()`) and can
  wait for an outside event (`suspend()`). A finished or idle fiber can be
  reused with `reset(cb)`. `Fiber.get_this()` returns the running fiber and
  creates the thread's main fiber on first use.
- `fibernet.fiberpool`: `FiberPool` keeps idle fibers for reuse. `acquire(cb)`
  hands one out and grows the pool by half when it is empty. `release(fiber)`
  takes it back. `resize(n)`, `idle_count()` and `total_count()` manage the
  pool. `FiberPool.get_local_fiber_pool()` returns the calling thread's pool,
  which starts with 256 fibers.
- `fibernet.timer`: `TimerManager` holds `Timer`s in deadline order.
  - `add_timer(ms, cb, recurring)` adds a timer.
  - `add_condition_timer(ms, cb, weak_cond, recurring)` adds a timer whose
    callback runs only while the weak reference is alive.
  - `get_next_timer()` returns the milliseconds to the next deadline, `0` if a
    timer is overdue, or `None` if there are no timers.
  - `list_expired_cb()` removes the expired timers and returns their
    callbacks.
  - Timers can be cancelled, refreshed and reset.
- `fibernet.thread`: `Thread`, a named thread that is running by the time its
  constructor returns, and a counting `Semaphore`.
- `fibernet.scheduler`: `Scheduler` runs queued fibers and callbacks on worker
  threads and, by default, on the calling thread too.
  - `schedule(task, thread)` queues a task, optionally pinned to one thread
    id.
  - `start()` starts the workers.
  - `stop()` finishes the queued work and joins the threads.
  - It can be used as a context manager.
- `fibernet.ioscheduler`: `IOManager` is a scheduler that starts itself. Its
  idle threads wait on a selector for descriptor readiness and on its own
  timers.
  - `add_event(fd, Event.READ or Event.WRITE, cb)` watches a descriptor.
    Without `cb`, the running fiber is resumed when the descriptor is ready.
  - `del_event`, `cancel_event` and `cancel_all` undo that. The cancel forms
    run the pending work at once.
  - `close()` or leaving a `with` block stops it and releases its resources.
- `fibernet.fd_manager`: `FdCtx` and `FdManager` record per-descriptor state:
  whether it is a socket, its blocking mode and its timeouts.
  `get_fd_manager()` returns the process-wide table.
- `fibernet.hookflag`: `is_hook_enable()` and `set_hook_enable(flag)` switch
  cooperative I/O per thread. Scheduler worker threads switch it on.
- `fibernet.hook`: cooperative versions of blocking calls: `sleep`, `usleep`,
  `nanosleep`, `socket`, `connect`, `connect_with_timeout`, `accept`, `read`,
  `recv`, `recvfrom`, `write`, `send`, `sendto`, `close`, `set_nonblocking`,
  `get_nonblocking`, `getsockopt` and `setsockopt`.
  - With cooperative I/O on and an `IOManager` in charge, an operation that
    would block parks the fiber until the descriptor is ready. The thread runs
    other work in the meantime.
  - A receive or send timeout set through `setsockopt` (in seconds, or as a
    packed `struct timeval`) makes the wait end with `TimeoutError`.
  - In any other case each function behaves like the plain call.

## Installation

```
pip install .
```

To install with the test dependencies:

```
pip install .[test]
```

## Quick example

```python
from fibernet.ioscheduler import IOManager

with IOManager(2) as iom:
    iom.add_timer(100, lambda: print("tick"), False)
```

Leaving the block waits for the pending timer to fire, then stops the threads.

## Demo servers

The package includes three small HTTP responders. Each one reads a request,
answers it with a fixed plain-text response whatever the request was, and then
closes the connection. Every command takes `--host` and `--port`.

- `fibernet-fiber-server` runs on `IOManager` and listens on port 8080. It has
  8 threads by default; set the number with `--threads`.
- `fibernet-epoll-server` is a single-threaded selector loop. It listens on
  port 8888 and answers with `1`.
- `fibernet-event-server` is a loop that dispatches read callbacks. It listens
  on port 8080.

For example:

```
fibernet-fiber-server --port 8080 --threads 4
```

Stop a server with Ctrl-C.

## What it does not do

- The functions in `fibernet.hook` do not replace the standard `socket`,
  `os` or `time` functions. Code has to call them explicitly to get
  cooperative behaviour.
- The demo servers do not parse HTTP and serve no files. They send one fixed
  response to each connection.

## Tests

```
pytest
```