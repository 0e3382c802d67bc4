# timetable_engine/time_utils.py
"""
GTFS 時刻文字列のユーティリティ

GTFS では深夜便を "25:30:00" のように 24 時以降で表すため、
時は 0〜23 に制限しない。上限は Settings.max_service_hours で決める。
"""
from __future__ import annotations

import re

from .errors import ValidationError

# "H:M" / "H:MM" / "HH:MM" / "HH:MM:SS"（時は 1 桁以上、ASCII 数字のみ）
_TIME_RE = re.compile(r"^(\d{1,3}):(\d{1,2})(?::(\d{1,2}))?$", re.ASCII)

DEFAULT_MAX_HOURS = 48


def time_to_seconds(time_str: str, max_hours: int = DEFAULT_MAX_HOURS) -> int:
    """
    時刻文字列をサービス日 00:00 からの秒数に変換する。
    不正な形式の場合は ValidationError を発生させる。

    NOTE:
      - "24:00:00" 以降は翌日扱いとしてそのまま秒に加算する（86400〜）。
      - max_hours 時間ちょうどまでは許可し、それを超えたら不正入力とみなす。
    """
    if time_str is None:
        raise ValidationError(time_str, "empty time string")

    text = str(time_str).strip()
    if not text:
        raise ValidationError(time_str, "empty time string")

    m = _TIME_RE.match(text)
    if not m:
        raise ValidationError(time_str, "expected HH:MM or HH:MM:SS")

    hour = int(m.group(1))
    minute = int(m.group(2))
    second = int(m.group(3)) if m.group(3) is not None else 0

    if not (0 <= minute <= 59):
        raise ValidationError(time_str, f"minute {minute} out of range 0-59")
    if not (0 <= second <= 59):
        raise ValidationError(time_str, f"second {second} out of range 0-59")

    total = hour * 3600 + minute * 60 + second
    if total > max_hours * 3600:
        raise ValidationError(time_str, f"exceeds {max_hours}:00:00")

    return total


def seconds_to_time(total_sec: int) -> str:
    """秒数を "HH:MM:SS" に戻す（24 時以降もそのまま）"""
    if total_sec < 0:
        raise ValueError(f"Negative seconds: {total_sec}")
    hours, rem = divmod(total_sec, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def normalize_time(time_str: str, max_hours: int = DEFAULT_MAX_HOURS) -> str:
    """
    入力ゆれを GTFS 標準の "HH:MM:SS" に揃える。

    例:
      - "9:30"     → "09:30:00"
      - "9:5"      → "09:05:00"
      - "25:30:00" → "25:30:00"（深夜便）
    """
    return seconds_to_time(time_to_seconds(time_str, max_hours))


def same_time(a: str | None, b: str | None) -> bool:
    """
    2つの時刻文字列が同じ時刻を表すか。

    "8:05:00" と "08:05:00" は同じとみなす。
    どちらかが解釈できないフィードの値なら文字列として比較する。
    """
    if a is None or b is None:
        return False
    try:
        return time_to_seconds(a, max_hours=10**3) == time_to_seconds(b, max_hours=10**3)
    except ValidationError:
        return a == b


def format_display_time(time_str: str | None) -> str:
    """
    表示用に "HH:MM" へ整形する（秒は落とす）。
    空や解釈できない値は空文字を返す（表示用なので例外にはしない）。
    """
    if not time_str:
        return ""
    try:
        total = time_to_seconds(time_str, max_hours=10**3)
    except ValidationError:
        return ""
    hours, rem = divmod(total, 3600)
    return f"{hours:02d}:{rem // 60:02d}"


def add_minutes(time_str: str, minutes: int) -> str:
    """
    時刻に分を加算する（負数も可）。日跨ぎは 24 時以降として表す。

    例: add_minutes("23:45:30", 30) → "24:15:30"
    """
    total = time_to_seconds(time_str, max_hours=10**3) + minutes * 60
    if total < 0:
        raise ValueError(f"Result before 00:00:00: {time_str} {minutes:+d}min")
    return seconds_to_time(total)
