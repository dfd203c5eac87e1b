"""Tests for RESP protocol parser and encoder."""

import pytest

from mini_kv.protocol import (
    Array,
    BulkString,
    Integer,
    NullBulkString,
    RESPIncompleteError,
    RESPParser,
    RESPProtocolError,
    SimpleError,
    SimpleString,
)


@pytest.fixture
def parser() -> RESPParser:
    return RESPParser()


class TestRESPEncoder:
    """Test RESP encoding functions."""

    def test_encode_simple_string(self, parser: RESPParser) -> None:
        assert parser.encode(SimpleString("OK")) == b"+OK\r\n"
        assert parser.encode(SimpleString("PONG")) == b"+PONG\r\n"

    def test_encode_error(self, parser: RESPParser) -> None:
        assert parser.encode(SimpleError("unknown command")) == b"-unknown command\r\n"

    def test_encode_integer(self, parser: RESPParser) -> None:
        assert parser.encode(Integer(0)) == b":0\r\n"
        assert parser.encode(Integer(1000)) == b":1000\r\n"
        # 負の整数
        assert parser.encode(Integer(-42)) == b":-42\r\n"

    def test_encode_bulk_string(self, parser: RESPParser) -> None:
        assert parser.encode(BulkString("foo")) == b"$3\r\nfoo\r\n"
        # 空文字列
        assert parser.encode(BulkString("")) == b"$0\r\n\r\n"
        # 複数行を含む文字列
        assert parser.encode(BulkString("foo\r\nbar")) == b"$8\r\nfoo\r\nbar\r\n"

    def test_encode_bulk_string_uses_byte_length(self, parser: RESPParser) -> None:
        """長さはUTF-8のバイト数で数える."""
        assert parser.encode(BulkString("héllo")) == "$6\r\nhéllo\r\n".encode("utf-8")

    def test_encode_null_bulk_string(self, parser: RESPParser) -> None:
        assert parser.encode(NullBulkString()) == b"$-1\r\n"

    def test_encode_nested_array(self, parser: RESPParser) -> None:
        token = Array([
            BulkString("SET"),
            Array([Integer(1), SimpleString("OK")]),
            Array([]),
        ])
        assert parser.encode(token) == (
            b"*3\r\n$3\r\nSET\r\n*2\r\n:1\r\n+OK\r\n*0\r\n"
        )

    def test_encode_unsupported_type(self, parser: RESPParser) -> None:
        with pytest.raises(ValueError):
            parser.encode("not a token")


class TestRESPDecoder:
    """Test RESP decoding."""

    def test_decode_simple_string(self, parser: RESPParser) -> None:
        assert parser.decode(b"+OK\r\n") == (SimpleString("OK"), b"")

    def test_decode_error(self, parser: RESPParser) -> None:
        assert parser.decode(b"-ERR oops\r\n") == (SimpleError("ERR oops"), b"")

    def test_decode_integer(self, parser: RESPParser) -> None:
        assert parser.decode(b":1000\r\n") == (Integer(1000), b"")
        assert parser.decode(b":-7\r\n") == (Integer(-7), b"")

    def test_decode_bulk_string(self, parser: RESPParser) -> None:
        assert parser.decode(b"$4\r\nPING\r\n") == (BulkString("PING"), b"")

    def test_decode_bulk_string_with_crlf_in_payload(self, parser: RESPParser) -> None:
        assert parser.decode(b"$8\r\nfoo\r\nbar\r\n") == (BulkString("foo\r\nbar"), b"")

    def test_decode_empty_bulk_string(self, parser: RESPParser) -> None:
        assert parser.decode(b"$0\r\n\r\n") == (BulkString(""), b"")

    def test_decode_null_bulk_string(self, parser: RESPParser) -> None:
        assert parser.decode(b"$-1\r\n") == (NullBulkString(), b"")

    def test_decode_command_array(self, parser: RESPParser) -> None:
        data = b"*2\r\n$4\r\nECHO\r\n$5\r\nHello\r\n"
        token, rest = parser.decode(data)
        assert token == Array([BulkString("ECHO"), BulkString("Hello")])
        assert rest == b""

    def test_decode_mixed_array(self, parser: RESPParser) -> None:
        token, _ = parser.decode(b"*2\r\n+OK\r\n:1000\r\n")
        assert token == Array([SimpleString("OK"), Integer(1000)])

    def test_decode_empty_array(self, parser: RESPParser) -> None:
        assert parser.decode(b"*0\r\n") == (Array([]), b"")

    def test_decode_nested_array(self, parser: RESPParser) -> None:
        token, _ = parser.decode(b"*2\r\n*1\r\n:1\r\n*0\r\n")
        assert token == Array([Array([Integer(1)]), Array([])])

    def test_decode_returns_remaining_bytes(self, parser: RESPParser) -> None:
        """1トークン分だけ消費し、残りを返す."""
        data = b"+OK\r\n*1\r\n$4\r\nPING\r\n"
        token, rest = parser.decode(data)
        assert token == SimpleString("OK")
        assert rest == b"*1\r\n$4\r\nPING\r\n"

        token, rest = parser.decode(rest)
        assert token == Array([BulkString("PING")])
        assert rest == b""

    def test_decode_bytearray_without_copying_input(self, parser: RESPParser) -> None:
        """bytearrayを渡すと残りもbytearrayで返る."""
        data = bytearray(b"$3\r\nfoo\r\n:1\r\n")
        token, rest = parser.decode(data)
        assert token == BulkString("foo")
        assert rest == bytearray(b":1\r\n")
        assert isinstance(rest, bytearray)


class TestRESPRoundTrip:
    """decode(encode(t)) == (t, b"")"""

    @pytest.mark.parametrize(
        "token",
        [
            SimpleString("hello world"),
            SimpleError("unknown command"),
            BulkString(""),
            BulkString("line1\r\nline2"),
            BulkString("日本語"),
            NullBulkString(),
            Integer(-(2**63)),
            Integer(2**63 - 1),
            Array([]),
            Array([
                BulkString("SET"),
                Array([NullBulkString(), Array([Integer(3)])]),
                SimpleError("x"),
            ]),
        ],
    )
    def test_round_trip(self, parser: RESPParser, token) -> None:
        assert parser.decode(parser.encode(token)) == (token, b"")


class TestRESPProtocolErrors:
    """Test RESP protocol error handling."""

    @pytest.mark.parametrize(
        "data",
        [
            b"?foo\r\n",  # 未知のプレフィックス
            b"+\r\n",  # 空のSimple String
            b"+OK\nmore\r\n",  # 行中のLF
            b":abc\r\n",
            b":+5\r\n",
            b": 5\r\n",
            b":1_000\r\n",
            b":9223372036854775808\r\n",  # i64の範囲外
            b"$ABC\r\nPING\r\n",
            b"$-2\r\n",
            b"$4\r\nPINGEXTRA\r\n",  # 長さとデータが不一致
            b"*x\r\n",
            b"*-1\r\n",
            b"*1\r\n?\r\n",  # ネストした要素のパース失敗
            b"$2\r\n\xff\xfe\r\n",  # 不正なUTF-8
        ],
    )
    def test_malformed_input_raises(self, parser: RESPParser, data: bytes) -> None:
        with pytest.raises(RESPProtocolError):
            parser.decode(data)

    @pytest.mark.parametrize(
        "data",
        [
            b"",
            b"+OK",
            b"+OK\r",
            b"$4\r\nPI",  # PINGの途中
            b"$4\r\nPING",
            b"*2\r\n$3\r\nGET\r\n",  # 要素が足りない
        ],
    )
    def test_incomplete_input_raises_incomplete(self, parser: RESPParser, data: bytes) -> None:
        with pytest.raises(RESPIncompleteError):
            parser.decode(data)

    def test_incomplete_error_is_protocol_error(self) -> None:
        assert issubclass(RESPIncompleteError, RESPProtocolError)

    def test_malformed_input_is_not_incomplete(self, parser: RESPParser) -> None:
        with pytest.raises(RESPProtocolError) as exc_info:
            parser.decode(b"$4\r\nPINGEXTRA\r\n")
        assert not isinstance(exc_info.value, RESPIncompleteError)

    def test_nesting_deeper_than_limit_is_rejected(self) -> None:
        parser = RESPParser(max_depth=3)

        # 深さ3まではOK
        token, _ = parser.decode(b"*1\r\n*1\r\n*0\r\n")
        assert token == Array([Array([Array([])])])

        with pytest.raises(RESPProtocolError):
            parser.decode(b"*1\r\n*1\r\n*1\r\n*0\r\n")

    def test_adversarial_nesting_does_not_overflow_stack(self, parser: RESPParser) -> None:
        data = b"*1\r\n" * 100_000
        with pytest.raises(RESPProtocolError):
            parser.decode(data)

    def test_incomplete_bulk_string_reports_missing_bytes(self, parser: RESPParser) -> None:
        """宣言された長さに足りないバイト数（終端のCRLFを含む）を報告する."""
        with pytest.raises(RESPIncompleteError) as exc_info:
            parser.decode(b"$10\r\nabc")
        assert exc_info.value.missing == 9

        with pytest.raises(RESPIncompleteError) as exc_info:
            parser.decode(b"$4\r\nPING\r")
        assert exc_info.value.missing == 1

    @pytest.mark.parametrize("data", [b"$4\r\nPINGX", b"$4\r\nPING\rX", b"$0\r\nX"])
    def test_bad_terminator_rejected_before_full_length_arrives(self, parser: RESPParser, data: bytes) -> None:
        """終端がCRLFでないと分かった時点でエラーにする（追加のデータを待たない）."""
        with pytest.raises(RESPProtocolError) as exc_info:
            parser.decode(data)
        assert not isinstance(exc_info.value, RESPIncompleteError)


class TestRESPEncoderLimits:
    """エンコーダの境界条件."""

    def test_encode_deeply_nested_array(self, parser: RESPParser) -> None:
        token = Array([])
        for _ in range(10_000):
            token = Array([token])

        assert parser.encode(token) == b"*1\r\n" * 10_000 + b"*0\r\n"

    def test_encode_array_keeps_declared_order(self, parser: RESPParser) -> None:
        token = Array([Array([Integer(1), Integer(2)]), Integer(3)])
        assert parser.encode(token) == b"*2\r\n*2\r\n:1\r\n:2\r\n:3\r\n"
        assert parser.encode_array(token.items) == parser.encode(token)

    def test_simple_string_text_is_emitted_verbatim(self, parser: RESPParser) -> None:
        """Simple Stringのテキストは検査せずにそのまま出力される.

        CR/LFを含むテキストは最初のCRLFで切れてしまうため、BulkStringで運ぶ。
        """
        encoded = parser.encode(SimpleString("a\r\nb"))
        assert encoded == b"+a\r\nb\r\n"
        assert parser.decode(encoded) == (SimpleString("a"), b"b\r\n")

        assert parser.decode(parser.encode(BulkString("a\r\nb"))) == (BulkString("a\r\nb"), b"")
