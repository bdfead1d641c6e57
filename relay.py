#!/usr/bin/env python3
"""
TCP relay engine: one listening port forwarded to one fixed remote.

Each RelayInstance runs a single-threaded selector loop. Every accepted
connection becomes a pair of RelayStates (client->remote and remote->client),
each holding at most BUFFER_SIZE undelivered bytes. When a destination cannot
keep up, intake from its source is paused until the buffer drains. End of
stream on one side is passed on as a half-close; the pair is closed once both
sides have finished and drained, or on the first I/O error.
"""
import errno
import logging
import selectors
import socket

logger = logging.getLogger(__name__)

BUFFER_SIZE = 2048
SELECT_TIMEOUT = 10  # seconds, only bounds the wait so liveness is rechecked
LISTEN_BACKLOG = 128

CONNECT_IN_PROGRESS = (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN)


class RelayState:
    """One direction of a relayed connection."""

    def __init__(self, source, destination):
        self.source = source
        self.destination = destination
        self.buffer = bytearray(BUFFER_SIZE)
        self.view = memoryview(self.buffer)
        self.length = 0
        self.eof = False  # source has sent everything it will send

    def read(self):
        """Fill the free tail of the buffer from the source. Returns False at end of stream."""
        if self.length == BUFFER_SIZE:
            return True
        try:
            received = self.source.recv_into(self.view[self.length:])
        except BlockingIOError:
            return True
        if received == 0:
            return False
        self.length += received
        return True

    def flush(self):
        """Send what the destination accepts. Returns True once nothing is left."""
        if self.length:
            try:
                sent = self.destination.send(self.view[:self.length])
            except BlockingIOError:
                sent = 0
            remaining = self.length - sent
            if remaining:
                self.buffer[:remaining] = self.buffer[sent:self.length]
            self.length = remaining
        return self.length == 0


def resolve(address):
    """Resolve (host, port) once so connects never block on DNS."""
    host, port = address
    family, _, _, _, sockaddr = socket.getaddrinfo(host, port, 0, socket.SOCK_STREAM)[0]
    return family, sockaddr


class RelayInstance:
    def __init__(self, local_addr, remote_addr, timeout=SELECT_TIMEOUT):
        self.remote_addr = remote_addr
        self.timeout = timeout
        self.pending = {}      # source socket -> RelayState
        self.stalled = {}      # destination socket -> RelayState
        self.connecting = {}   # outbound socket -> inbound socket
        self.closed = False
        self.port = local_addr[1]
        self._listener = None
        self._selector = selectors.DefaultSelector()
        try:
            self._family, self._remote_sockaddr = resolve(remote_addr)
            self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._listener.bind(local_addr)
            self._listener.listen(LISTEN_BACKLOG)
            self._listener.setblocking(False)
            self.port = self._listener.getsockname()[1]
            self._selector.register(self._listener, selectors.EVENT_READ)
        except OSError:
            self.close()
            raise

    @property
    def local_address(self):
        return self._listener.getsockname()

    def run(self):
        logger.info("Relay listening on port %d -> %s:%d", self.port, *self.remote_addr)
        while not self.closed:
            self.poll()

    def poll(self, timeout=None):
        """Wait once for readiness and dispatch every ready socket.

        Any error escaping here is a selector-level failure and closes the
        whole instance.
        """
        if self.closed:
            return
        try:
            events = self._selector.select(self.timeout if timeout is None else timeout)
            for key, mask in events:
                self._dispatch(key.fileobj, mask)
        except Exception:
            logger.exception("Relay on port %d failed to work", self.port)
            self.close()

    def _dispatch(self, sock, mask):
        if sock is self._listener:
            self._accept()
            return
        if sock in self.connecting:
            self._finish_connect(sock)
            return
        if mask & selectors.EVENT_WRITE:
            self._flush(sock)
        if mask & selectors.EVENT_READ:
            self._read(sock)

    def _accept(self):
        try:
            inbound, client_addr = self._listener.accept()
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning("Incoming connection on port %d has failed: %s", self.port, e)
            return
        inbound.setblocking(False)

        outbound = None
        try:
            outbound = socket.socket(self._family, socket.SOCK_STREAM)
            outbound.setblocking(False)
            err = outbound.connect_ex(self._remote_sockaddr)
            if err not in CONNECT_IN_PROGRESS:
                raise OSError(err, errno.errorcode.get(err, "connect failed"))
            self._selector.register(outbound, selectors.EVENT_WRITE)
        except OSError as e:
            logger.warning("Outgoing connection to %s:%d has failed: %s", *self.remote_addr, e)
            self._close_quietly(inbound)
            if outbound is not None:
                self._close_quietly(outbound)
            return
        self.connecting[outbound] = inbound
        logger.debug("Accepted %s on port %d, connecting to %s:%d", client_addr, self.port, *self.remote_addr)

    def _finish_connect(self, outbound):
        inbound = self.connecting.pop(outbound)
        err = outbound.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err:
            logger.warning("Outgoing connection to %s:%d has failed: %s",
                           *self.remote_addr, errno.errorcode.get(err, err))
            self._release(outbound)
            self._release(inbound)
            return
        self.pending[inbound] = RelayState(inbound, outbound)
        self.pending[outbound] = RelayState(outbound, inbound)
        self._update_interest(inbound)
        self._update_interest(outbound)

    def _read(self, sock):
        state = self.pending.get(sock)
        if state is None or state.eof or self.stalled.get(state.destination) is state:
            return
        try:
            if not state.read():
                self._end_of_stream(state)
                return
            if not state.flush():
                self.stalled[state.destination] = state
                self._update_interest(state.source)
                self._update_interest(state.destination)
        except OSError as e:
            logger.warning("Exception while relaying on port %d: %s", self.port, e)
            self._close_pair(state)

    def _flush(self, sock):
        state = self.stalled.get(sock)
        if state is None:
            return
        try:
            if state.flush():
                del self.stalled[sock]
                self._update_interest(state.destination)
                self._update_interest(state.source)
                if state.eof:
                    self._half_close(state)
        except OSError as e:
            logger.warning("Exception while trying to flush buffer on port %d: %s", self.port, e)
            self._close_pair(state)

    def _end_of_stream(self, state):
        """The source will send nothing more; stop reading it and pass the half-close on once drained."""
        state.eof = True
        self._update_interest(state.source)
        if state.length == 0:
            self._half_close(state)

    def _half_close(self, state):
        state.destination.shutdown(socket.SHUT_WR)
        peer = self.pending.get(state.destination)
        if peer is None or (peer.eof and peer.length == 0):
            logger.debug("Connection closed on port %d", self.port)
            self._close_pair(state)

    def _update_interest(self, sock):
        """Register sock for exactly the events its relay states currently need."""
        events = 0
        state = self.pending.get(sock)
        if state is not None and not state.eof and self.stalled.get(state.destination) is not state:
            events |= selectors.EVENT_READ
        if sock in self.stalled:
            events |= selectors.EVENT_WRITE

        key = self._selector.get_map().get(sock)
        if not events:
            if key is not None:
                self._selector.unregister(sock)
        elif key is None:
            self._selector.register(sock, events)
        elif key.events != events:
            self._selector.modify(sock, events)

    def _close_pair(self, state):
        for sock in (state.source, state.destination):
            self.pending.pop(sock, None)
            self.stalled.pop(sock, None)
            self._release(sock)

    def _release(self, sock):
        try:
            self._selector.unregister(sock)
        except (KeyError, ValueError):
            pass
        self._close_quietly(sock)

    def _close_quietly(self, closeable):
        if closeable is None:
            return
        try:
            closeable.close()
        except Exception as e:
            logger.warning("Failed to close %r: %s", closeable, e)

    def close(self):
        """Close every socket the instance owns, then the listener and selector."""
        if self.closed:
            return
        self.closed = True
        sockets = set(self.pending)
        sockets.update(self.connecting)
        sockets.update(self.connecting.values())
        self.pending.clear()
        self.stalled.clear()
        self.connecting.clear()
        for sock in sockets:
            self._close_quietly(sock)
        self._close_quietly(self._listener)
        self._close_quietly(self._selector)


def new_relay_instance(local_addr, remote_addr, timeout=SELECT_TIMEOUT):
    """
    Bind local_addr and prepare a relay to remote_addr.
    Returns (instance, None) on success or (None, error) when the port
    could not be claimed or the remote could not be resolved.
    """
    try:
        return RelayInstance(local_addr, remote_addr, timeout), None
    except OSError as e:
        return None, e
