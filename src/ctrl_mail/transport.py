# =============================================================================
# Transport Session
# =============================================================================
# Owns exactly one TCP connection (TLS from the first byte when use_ssl is
# set) and exposes byte-level send/receive primitives.
#
# There is no framing here: the IMAP engine decides when a response is
# complete. A receive that times out returns b"" so the caller can apply its
# own retry cap; a closed or broken connection raises TransportError.
#
# Usage:
#   async with await TransportSession.open(params) as transport:
#       await transport.send(b"A001 NOOP\r\n")
#       chunk = await transport.receive_chunk()
# =============================================================================

import asyncio
import logging
import ssl

from ctrl_mail.core import ConnectionParameters, TransportError

logger = logging.getLogger(__name__)


class TransportSession:
    """
    A single encrypted byte stream to a mail server.

    Create instances with `await TransportSession.open(params)`.

    Attributes:
        params: Connection parameters this stream was opened with.
    """

    # Bytes requested per read
    CHUNK_SIZE = 65536

    # Timeout for establishing the connection (seconds)
    CONNECT_TIMEOUT = 30.0

    # How long a single read waits before reporting "nothing yet" (seconds)
    READ_TIMEOUT = 0.2

    def __init__(
        self,
        params: ConnectionParameters,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        read_timeout: float | None = None,
    ) -> None:
        self.params = params
        self._reader = reader
        self._writer = writer
        self._read_timeout = read_timeout if read_timeout is not None else self.READ_TIMEOUT
        self._closed = False

    @classmethod
    async def open(
        cls,
        params: ConnectionParameters,
        *,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
        ssl_context: ssl.SSLContext | None = None,
    ) -> "TransportSession":
        """
        Connect to `params.host:params.port`.

        TLS is negotiated during connect when `params.use_ssl` is True.

        Raises:
            TransportError: If the connection cannot be established.
        """
        timeout = connect_timeout if connect_timeout is not None else cls.CONNECT_TIMEOUT
        context = None
        if params.use_ssl:
            context = ssl_context or ssl.create_default_context()

        logger.info(f"Opening connection to {params.host}:{params.port} (tls={params.use_ssl})")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(params.host, params.port, ssl=context),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Connection timed out to {params.host}:{params.port}"
            ) from e
        except (OSError, ssl.SSLError) as e:
            raise TransportError(
                f"Failed to connect to {params.host}:{params.port}: {e}"
            ) from e

        return cls(params, reader, writer, read_timeout=read_timeout)

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def send(self, data: bytes) -> None:
        """
        Write `data` and wait for it to drain.

        Raises:
            TransportError: On write failure or if the stream is closed.
        """
        if self._closed:
            raise TransportError("Connection is closed")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Write to {self.params.host} failed: {e}") from e

    async def receive_chunk(self) -> bytes:
        """
        Read whatever is available, up to CHUNK_SIZE bytes.

        Returns:
            The bytes read, or b"" if nothing arrived within the read timeout.

        Raises:
            TransportError: If the peer closed the connection or the read failed.
        """
        if self._closed:
            raise TransportError("Connection is closed")
        try:
            data = await asyncio.wait_for(
                self._reader.read(self.CHUNK_SIZE),
                timeout=self._read_timeout,
            )
        except asyncio.TimeoutError:
            return b""
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Read from {self.params.host} failed: {e}") from e

        if not data:
            # read() returns b"" only at EOF
            raise TransportError(f"Connection closed by {self.params.host}")
        return data

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error while closing connection to {self.params.host}: {e}")

    async def __aenter__(self) -> "TransportSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
