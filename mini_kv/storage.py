"""In-memory key-value store for mini-kv.

このモジュールは、キー・バリューペアの保存・取得・削除と、
キーごとの有効期限（Lazy expiry）を担当します。

全接続で1つのDataStoreインスタンスを共有します。
読み取り同士は並行に実行でき、書き込みは他のすべての操作と排他になります。

"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterator


@dataclass
class StoreEntry:
    """ストレージのエントリ.

    Attributes:
        value: 保存される文字列値
        expiry_at: 有効期限（clock()基準の時刻。Noneの場合は期限なし）
    """

    value: str
    expiry_at: float | None = field(default=None)

    def is_expired(self, now: float) -> bool:
        return self.expiry_at is not None and now >= self.expiry_at


class ReadWriteLock:
    """共有/排他ロック.

    - read(): 複数の読み取りが同時に保持できる
    - write(): 他の読み取り・書き込みすべてと排他

    書き込み待ちがいる間は新しい読み取りをブロックする（書き込みの飢餓を防ぐ）。
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DataStore:
    """インメモリのキー・バリューストア.

    責務:
    - キー・バリューペアの保存・取得・削除
    - 有効期限の記録と、読み取り時の期限チェック（Lazy expiry）

    期限切れのエントリはget()からは見えなくなるが、
    上書きかremove()されるまでメモリ上には残る。
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """ストアを初期化.

        Args:
            clock: 現在時刻（秒）を返す関数。テストでは差し替え可能
        """
        self._data: dict[str, StoreEntry] = {}
        self._lock = ReadWriteLock()
        self._clock = clock

    def insert(self, key: str, value: str, ttl: float | timedelta | None = None) -> None:
        """キーに値を設定（既存のエントリは有効期限ごと上書き）.

        Args:
            key: 設定するキー
            value: 設定する値
            ttl: 有効期限までの秒数またはtimedelta（Noneの場合は期限なし）
        """
        expiry_at = None
        if ttl is not None:
            if isinstance(ttl, timedelta):
                ttl = ttl.total_seconds()
            expiry_at = self._clock() + ttl

        entry = StoreEntry(value=value, expiry_at=expiry_at)
        with self._lock.write():
            self._data[key] = entry

    def get(self, key: str) -> str | None:
        """キーの値を取得.

        Returns:
            値が存在し期限内の場合はその値、存在しないか期限切れの場合はNone
        """
        with self._lock.read():
            entry = self._data.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry.value

    def remove(self, key: str) -> str | None:
        """キーを削除し、直前の値を返す（期限切れのエントリも削除する）"""
        with self._lock.write():
            entry = self._data.pop(key, None)
        return entry.value if entry else None

    def __len__(self) -> int:
        """物理的に保持しているエントリ数（期限切れを含む）"""
        with self._lock.read():
            return len(self._data)
