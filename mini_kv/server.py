"""TCP server and client handler for mini-kv.

このモジュールは、TCPサーバの起動と管理、
および個別クライアント接続の処理を担当します。
"""

import asyncio
import logging
from asyncio import StreamReader, StreamWriter

from .commands import CommandDispatcher
from .protocol import RESPIncompleteError, RESPParser, RESPProtocolError, SimpleError
from .storage import DataStore

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6379

READ_CHUNK_SIZE = 4096

PARSE_ERROR = "parse error"


class ClientHandler:
    """クライアント接続のハンドラ.

    責務:
    - 個別クライアントとの通信ループ
    - リクエスト受信→デコード→ディスパッチ→エンコード→レスポンス送信

    1接続につき同時に処理するリクエストは1つだけ。
    """

    def __init__(self, parser: RESPParser, dispatcher: CommandDispatcher, store: DataStore) -> None:
        """ハンドラを初期化.

        Args:
            parser: RESPパーサのインスタンス
            dispatcher: コマンドディスパッチャのインスタンス
            store: 全接続で共有するデータストア
        """
        self._parser = parser
        self._dispatcher = dispatcher
        self._store = store

    async def handle(self, reader: StreamReader, writer: StreamWriter) -> None:
        """クライアント接続を処理するメインループ.

        Args:
            reader: asyncioのStreamReader
            writer: asyncioのStreamWriter

        EOFまたはI/Oエラーで終了し、終了時に必ずwriterをクローズする。
        """
        addr = writer.get_extra_info("peername")
        logger.info(f"Client connected: {addr}")

        buffer = bytearray()
        try:
            while True:
                try:
                    token, buffer = self._parser.decode(buffer)

                except RESPIncompleteError as e:
                    # 不足分が届くまで読み足してから再デコードする
                    if not await self._fill(reader, buffer, e.missing):
                        if buffer:
                            logger.info(f"Client disconnected mid-request: {addr}")
                        else:
                            logger.info(f"Client disconnected: {addr}")
                        break
                    continue

                except RESPProtocolError as e:
                    # ストリームの同期が取れないので、受信済みのデータは捨てる
                    logger.warning(f"RESP protocol error from {addr}: {e}")
                    buffer = bytearray()
                    await self._send(writer, self._parser.encode(SimpleError(PARSE_ERROR)))
                    continue

                response = self._dispatcher.dispatch(token, self._store)
                await self._send(writer, self._parser.encode(response))

        except ConnectionError as e:
            logger.info(f"Connection lost from {addr}: {e}")

        except asyncio.CancelledError:
            logger.info(f"Connection to {addr} cancelled due to server shutdown")
            raise

        except Exception as e:
            logger.error(f"Unexpected error from {addr}: {e}", exc_info=True)

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
            logger.info(f"Connection closed: {addr}")

    async def _fill(self, reader: StreamReader, buffer: bytearray, missing: int) -> bool:
        """bufferに少なくともmissingバイトを追加する.

        Returns:
            False: 必要なバイト数が揃う前にEOFに達した
        """
        while missing > 0:
            chunk = await reader.read(max(missing, READ_CHUNK_SIZE))
            if not chunk:
                return False
            buffer.extend(chunk)
            missing -= len(chunk)
        return True

    async def _send(self, writer: StreamWriter, data: bytes) -> None:
        writer.write(data)
        await writer.drain()


class TCPServer:
    """mini-kvのTCPサーバ.

    責務:
    - TCP接続の受け入れ
    - 全接続で共有する唯一のDataStoreの生成
    - サーバのライフサイクル管理
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        store: DataStore | None = None,
        client_handler: ClientHandler | None = None,
    ) -> None:
        """サーバを初期化.

        Args:
            host: バインドするホスト
            port: バインドするポート（0の場合はOSが空きポートを割り当てる）
            store: データストア（Noneの場合は新規作成）
            client_handler: クライアントハンドラ（Noneの場合は新規作成）
        """
        self.host = host
        self.port = port
        self._server: asyncio.Server | None = None
        self._store = store if store is not None else DataStore()
        self._client_handler = client_handler

    @property
    def store(self) -> DataStore:
        return self._store

    async def listen(self) -> None:
        """接続の待ち受けを開始する（serve_forever()は呼ばない）"""
        if self._client_handler is None:
            self._client_handler = ClientHandler(RESPParser(), CommandDispatcher(), self._store)

        self._server = await asyncio.start_server(
            self._client_handler.handle, self.host, self.port
        )

        if self._server.sockets:
            addr = self._server.sockets[0].getsockname()
            self.port = addr[1]
        logger.info(f"mini-kv server started on {self.host}:{self.port}")

    async def start(self) -> None:
        """サーバを起動し、接続を待ち受ける.

        このメソッドはserve_forever()内で無限ループするため、
        キャンセルや例外が発生するまで戻らない。
        """
        if self._server is None:
            await self.listen()

        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        """サーバを停止し、待ち受けをクローズする."""
        logger.info("Stopping mini-kv server...")

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("mini-kv server stopped")
