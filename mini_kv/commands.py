"""Command dispatcher for mini-kv.

このモジュールは、デコード済みのTokenを順序付きのハンドラに渡し、
最初に応答したハンドラの結果をレスポンスとして返します。

"""

import logging
from dataclasses import dataclass

from .protocol import Array, BulkString, NullBulkString, SimpleError, SimpleString, Token
from .storage import DataStore

logger = logging.getLogger(__name__)

UNKNOWN_COMMAND = "unknown command"


@dataclass(frozen=True)
class CommandContext:
    """1リクエスト分のコンテキスト（リクエストToken + 共有ストア）"""
    token: Token
    store: DataStore


def _bulk_arguments(token: Token, name: str, arity: int) -> list[str] | None:
    """tokenが `name` で始まるarity個のBulk Stringの配列なら、その中身を返す.

    コマンド名は大文字小文字を区別しない。形が合わなければNoneを返す。
    """
    if not isinstance(token, Array) or len(token.items) != arity:
        return None
    if not all(isinstance(item, BulkString) for item in token.items):
        return None

    values = [item.value for item in token.items]
    if values[0].upper() != name:
        return None
    return values


class CommandHandler:
    """コマンドハンドラの基底クラス.

    try_handle()はコンテキストを認識できればレスポンスTokenを返し、
    認識できなければNoneを返して次のハンドラに委ねる。
    """

    def try_handle(self, context: CommandContext) -> Token | None:
        raise NotImplementedError


class PingHandler(CommandHandler):
    """PING: "PONG"を返す.

    受け付ける形:
    - "PING"というSimple StringまたはBulk String
    - 上記（またはそれを1つだけ含む配列）を1つだけ含む配列
    """

    def _is_ping(self, token: Token) -> bool:
        if isinstance(token, (SimpleString, BulkString)):
            return token.value.upper() == "PING"
        if isinstance(token, Array) and len(token.items) == 1:
            return self._is_ping(token.items[0])
        return False

    def try_handle(self, context: CommandContext) -> Token | None:
        if self._is_ping(context.token):
            return BulkString("PONG")
        return None


class EchoHandler(CommandHandler):
    """ECHO: 引数をそのまま返す"""

    def try_handle(self, context: CommandContext) -> Token | None:
        args = _bulk_arguments(context.token, "ECHO", 2)
        if args is None:
            return None
        return BulkString(args[1])


class GetHandler(CommandHandler):
    """GET: キーの値を返す（存在しないか期限切れならNull Bulk String）"""

    def try_handle(self, context: CommandContext) -> Token | None:
        args = _bulk_arguments(context.token, "GET", 2)
        if args is None:
            return None

        value = context.store.get(args[1])
        if value is None:
            return NullBulkString()
        return BulkString(value)


class SetHandler(CommandHandler):
    """SET: キーに値を設定して"OK"を返す（有効期限はクリアされる）"""

    def try_handle(self, context: CommandContext) -> Token | None:
        args = _bulk_arguments(context.token, "SET", 3)
        if args is None:
            return None

        context.store.insert(args[1], args[2])
        return SimpleString("OK")


class CommandDispatcher:
    """Redisコマンドのディスパッチャ.

    責務:
    - 登録順にハンドラを試し、最初に返されたレスポンスを採用する
    - どのハンドラも認識しなければ "unknown command" エラーを返す

    前のハンドラが後ろのハンドラを隠すことがあるため、登録順は意味を持つ。
    """

    def __init__(self, handlers: list[CommandHandler] | None = None) -> None:
        """ディスパッチャを初期化.

        Args:
            handlers: 試行順のハンドラ（Noneの場合はPING, ECHO, GET, SETの順）
        """
        if handlers is None:
            handlers = [PingHandler(), EchoHandler(), GetHandler(), SetHandler()]
        self._handlers = list(handlers)

    def dispatch(self, token: Token, store: DataStore) -> Token:
        """リクエストTokenを実行してレスポンスTokenを返す"""
        context = CommandContext(token, store)

        for handler in self._handlers:
            response = handler.try_handle(context)
            if response is not None:
                logger.debug(f"{type(handler).__name__} handled {token!r}")
                return response

        logger.debug(f"Unknown command: {token!r}")
        return SimpleError(UNKNOWN_COMMAND)
