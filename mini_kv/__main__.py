"""mini-kv entry point.

このモジュールは、mini-kvサーバのエントリポイントです。
`python -m mini_kv` で起動します。
"""

import argparse
import asyncio
import logging
import sys

from .commands import CommandDispatcher
from .protocol import RESPParser
from .server import DEFAULT_HOST, DEFAULT_PORT, ClientHandler, TCPServer
from .storage import DataStore


def setup_logging(level: str = "INFO") -> None:
    """ログ設定を初期化."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="mini_kv", description="mini-kv - in-memory key-value server")
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Host to bind to (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port to bind to (default: {DEFAULT_PORT})")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """メインエントリポイント.

    1. 各コンポーネントのインスタンスを作成
    2. TCPServerを起動
    3. 停止されるまで実行
    """
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    # 全接続で共有するストアは1つだけ
    store = DataStore()
    client_handler = ClientHandler(RESPParser(), CommandDispatcher(), store)

    server = TCPServer(
        host=args.host,
        port=args.port,
        store=store,
        client_handler=client_handler,
    )

    logger.info("Starting mini-kv server...")

    try:
        await server.start()
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
    finally:
        logger.info("Shutting down mini-kv server...")
        await server.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
