"""RESP (REdis Serialization Protocol) parser and encoder.

このモジュールは、RESPプロトコルのパース（バイト列→Tokenツリー）と
エンコード（Tokenツリー→バイト列）を担当します。
他のコンポーネント（ストア・コマンド）には依存しません。

"""

import re
from dataclasses import dataclass, field

CRLF = b"\r\n"

# 配列のネストの上限（敵対的な入力による再帰の暴走を防ぐ）
DEFAULT_MAX_DEPTH = 128

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_SIGNED_DECIMAL = re.compile(rb"-?[0-9]+")
_UNSIGNED_DECIMAL = re.compile(rb"[0-9]+")


@dataclass
class SimpleString:
    """Simple String型を表すラッパー (+)

    valueは1文字以上でCR/LFを含まないこと（エンコード時には検査しない）。
    """
    value: str

@dataclass
class SimpleError:
    """Error型を表すラッパー (-)。valueの制約はSimpleStringと同じ"""
    value: str

@dataclass
class BulkString:
    """Bulk String型を表すラッパー ($)"""
    value: str

@dataclass
class NullBulkString:
    """Null Bulk String ($-1)"""

@dataclass
class Integer:
    """Integer型を表すラッパー (:)"""
    value: int

@dataclass
class Array:
    """Array型を表すラッパー (*)"""
    items: list = field(default_factory=list)


Token = SimpleString | SimpleError | BulkString | NullBulkString | Integer | Array


class RESPParser:
    """RESPプロトコルのパーサ・エンコーダ.

    責務:
    - decode(): バイト列の先頭から1トークンを読み取り、残りのバイト列と一緒に返す
    - encode(): Tokenを正規のRESP形式にエンコード

    decode()は失敗すると必ず例外を送出し、部分的な結果は返さない。
    入力が途中で終わっている場合はRESPIncompleteErrorになるので、
    呼び出し側はバッファにデータを追加して再試行できる。

    encode()はどのTokenに対しても失敗しないが、Simple String/Errorの
    テキストはそのまま出力する。テキストにCR/LFを含めるとフレームが壊れ、
    デコードすると最初のCRLFで切れる。空のSimple Stringもエンコードはできるが
    デコードはできない。任意のテキストを運ぶ場合はBulkStringを使うこと。
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self._max_depth = max_depth

    def decode(self, data: bytes | bytearray) -> tuple[Token, bytes | bytearray]:
        """バイト列から1トークンをパースする.

        Args:
            data: 受信済みのバイト列（コピーせずにそのまま読む）

        Returns:
            (パースしたToken, 消費されなかった残りのバイト列。dataと同じ型)

        Raises:
            RESPIncompleteError: 入力が途中で終わっている
            RESPProtocolError: 不正なRESP形式
        """
        token, pos = self._decode_token(data, 0, 0)
        return token, data[pos:]

    def _decode_token(self, data: bytes, pos: int, depth: int) -> tuple[Token, int]:
        if pos >= len(data):
            raise RESPIncompleteError("Unexpected end of input")

        # 先頭の型プレフィックスで分岐（+ → $ → : → * の順）
        prefix = data[pos:pos + 1]
        if prefix == b"+":
            return self._decode_simple_string(data, pos + 1)
        elif prefix == b"$":
            return self._decode_bulk_string(data, pos + 1)
        elif prefix == b":":
            return self._decode_integer(data, pos + 1)
        elif prefix == b"*":
            return self._decode_array(data, pos + 1, depth)
        elif prefix == b"-":
            return self._decode_error(data, pos + 1)
        else:
            raise RESPProtocolError(f"Unknown type prefix: {prefix!r}")

    def _read_line(self, data: bytes, pos: int) -> tuple[bytes, int]:
        """posからCRLFまでの1行を読み、(行の中身, CRLFの次の位置)を返す"""
        end = data.find(CRLF, pos)
        if end == -1:
            rest = data[pos:]
            # 末尾の\rだけは後続の\nを待つ
            if b"\n" in rest or b"\r" in rest[:-1]:
                raise RESPProtocolError("Bare CR or LF in line")
            raise RESPIncompleteError("Expected CRLF")

        line = data[pos:end]
        if b"\r" in line or b"\n" in line:
            raise RESPProtocolError("Bare CR or LF in line")
        return line, end + 2

    def _decode_text(self, raw: bytes) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise RESPProtocolError("Payload is not valid UTF-8")

    def _decode_simple_string(self, data: bytes, pos: int) -> tuple[Token, int]:
        line, pos = self._read_line(data, pos)
        # 空のSimple Stringは受け付けない（Bulk Stringは空を許可する）
        if not line:
            raise RESPProtocolError("Empty simple string")
        return SimpleString(self._decode_text(line)), pos

    def _decode_error(self, data: bytes, pos: int) -> tuple[Token, int]:
        line, pos = self._read_line(data, pos)
        if not line:
            raise RESPProtocolError("Empty error message")
        return SimpleError(self._decode_text(line)), pos

    def _decode_bulk_string(self, data: bytes, pos: int) -> tuple[Token, int]:
        line, pos = self._read_line(data, pos)

        # Null値のチェック
        if line == b"-1":
            return NullBulkString(), pos

        if not _UNSIGNED_DECIMAL.fullmatch(line):
            raise RESPProtocolError(f"Invalid bulk string length: {line!r}")
        length = int(line)

        # データ + \r\n が揃っているか
        end = pos + length
        # 届いている分だけでも終端のCRLFを先に検証する
        if data[end:end + 2] != CRLF[:max(0, len(data) - end)]:
            raise RESPProtocolError("Expected CRLF after bulk string")
        if len(data) < end + 2:
            raise RESPIncompleteError(
                "Bulk string shorter than declared length",
                missing=end + 2 - len(data),
            )

        return BulkString(self._decode_text(data[pos:end])), end + 2

    def _decode_integer(self, data: bytes, pos: int) -> tuple[Token, int]:
        line, pos = self._read_line(data, pos)
        if not _SIGNED_DECIMAL.fullmatch(line):
            raise RESPProtocolError(f"Invalid integer: {line!r}")

        value = int(line)
        if not INT64_MIN <= value <= INT64_MAX:
            raise RESPProtocolError(f"Integer out of range: {line!r}")
        return Integer(value), pos

    def _decode_array(self, data: bytes, pos: int, depth: int) -> tuple[Token, int]:
        if depth >= self._max_depth:
            raise RESPProtocolError("Array nesting too deep")

        line, pos = self._read_line(data, pos)
        if not _UNSIGNED_DECIMAL.fullmatch(line):
            raise RESPProtocolError(f"Invalid array length: {line!r}")
        count = int(line)

        # 各要素を再帰的に読む
        items = []
        for _ in range(count):
            item, pos = self._decode_token(data, pos, depth + 1)
            items.append(item)

        return Array(items), pos

    def encode_simple_string(self, value: str) -> bytes:
        """Simple Stringをエンコードする"""
        return f"+{value}\r\n".encode('utf-8')

    def encode_error(self, message: str) -> bytes:
        """エラーメッセージをエンコードする"""
        return f"-{message}\r\n".encode('utf-8')

    def encode_integer(self, value: int) -> bytes:
        """整数をエンコードする"""
        return f":{value}\r\n".encode('utf-8')

    def encode_bulk_string(self, value: str) -> bytes:
        """Bulk Stringをエンコードする"""
        # バイト列に変換
        data = value.encode('utf-8')
        length = len(data)  # バイト長を取得

        # $<length>\r\n<data>\r\n
        return f"${length}\r\n".encode('utf-8') + data + CRLF

    def encode_null_bulk_string(self) -> bytes:
        return b'$-1\r\n'

    def encode_array(self, items: list) -> bytes:
        """Arrayをエンコード（要素は宣言順に深さ優先で連結）"""
        return self.encode(Array(items))

    def encode(self, token: Token) -> bytes:
        """Tokenを適切な形式でエンコードする.

        Arrayは再帰ではなく明示的なスタックで深さ優先に展開するので、
        ネストの深さに関係なく失敗しない。
        """
        parts = []
        stack = [token]
        while stack:
            token = stack.pop()
            if isinstance(token, Array):
                parts.append(f"*{len(token.items)}\r\n".encode('utf-8'))
                # 宣言順に取り出せるよう逆順に積む
                stack.extend(reversed(token.items))
            else:
                parts.append(self._encode_scalar(token))
        return b"".join(parts)

    def _encode_scalar(self, token: Token) -> bytes:
        if isinstance(token, SimpleString):
            return self.encode_simple_string(token.value)
        elif isinstance(token, SimpleError):
            return self.encode_error(token.value)
        elif isinstance(token, Integer):
            return self.encode_integer(token.value)
        elif isinstance(token, BulkString):
            return self.encode_bulk_string(token.value)
        elif isinstance(token, NullBulkString):
            return self.encode_null_bulk_string()
        else:
            raise ValueError(f"Unsupported type: {type(token)}")


class RESPProtocolError(Exception):
    """RESPプロトコルのパースエラー.

    例:
        raise RESPProtocolError(f"Invalid bulk string length: {line!r}")
    """

    pass


class RESPIncompleteError(RESPProtocolError):
    """入力がトークンの途中で終わっている.

    宣言された長さやCRLFを満たすだけのバイトがまだ届いていないことを表す。
    接続ハンドラはこの例外を受け取ったら追加のデータを待つ。

    Attributes:
        missing: 少なくともあと何バイト必要か（行の途中で終わっている場合は1）
    """

    def __init__(self, message: str, missing: int = 1) -> None:
        super().__init__(message)
        self.missing = missing
