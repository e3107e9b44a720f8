from __future__ import annotations

from enum import Enum
from typing import Optional


class TimerKind(str, Enum):
    """计时任务类型，用于统一生成 APScheduler job id。

    - almost_complete: 结束前的提醒
    - expiry: 时长耗尽（进入超时或自动结束）
    """

    AlmostComplete = "almost_complete"
    Expiry = "expiry"


def make_timer_id(entry_id: int, kind: TimerKind, *, suffix: Optional[str] = None) -> str:
    """生成统一格式的计时任务 ID："entry:<id>:<kind>"

    同一条目同一类型的计时任务只会存在一个，重复安排时直接替换。
    """

    parts: list[str] = ["entry", str(entry_id), TimerKind(kind).value]
    if suffix:
        parts.append(suffix)
    return ":".join(parts)
