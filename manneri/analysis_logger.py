"""解析呼び出しログ管理

各解析の処理時間、対象メッセージ数、判定結果を記録する。
ログは最新1000件まで保持し、累計は別に数える。
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict

logger = logging.getLogger(__name__)

MAX_LOGS = 1000


@dataclass
class AnalysisCallLog:
    """単一の解析呼び出しログ"""
    timestamp: str
    operation: str  # analyze_conversation, detect_conversation_loops など
    message_count: int
    duration_ms: float
    should_intervene: bool = False
    pattern_count: int = 0


class AnalysisLogger:
    """解析呼び出しを記録"""

    def __init__(self, max_logs: int = MAX_LOGS):
        self.logs: Deque[AnalysisCallLog] = deque(maxlen=max_logs)
        self.total_calls = 0
        self.total_duration_ms = 0.0

    def log_call(
        self,
        operation: str,
        message_count: int,
        duration_ms: float,
        should_intervene: bool = False,
        pattern_count: int = 0
    ) -> AnalysisCallLog:
        """
        解析呼び出しを記録

        Args:
            operation: 解析の種類
            message_count: 対象メッセージ数
            duration_ms: 処理時間（ミリ秒）
            should_intervene: 介入判定の結果
            pattern_count: 検出パターン数

        Returns:
            記録されたログエントリ
        """
        log = AnalysisCallLog(
            timestamp=datetime.utcnow().isoformat(),
            operation=operation,
            message_count=message_count,
            duration_ms=round(duration_ms, 3),
            should_intervene=should_intervene,
            pattern_count=pattern_count,
        )

        self.logs.append(log)
        self.total_calls += 1
        self.total_duration_ms += duration_ms
        logger.debug(
            f"Analysis: {operation} | {message_count} messages | "
            f"{duration_ms:.2f}ms | intervene={should_intervene}"
        )

        return log

    @property
    def average_duration_ms(self) -> float:
        if not self.total_calls:
            return 0.0
        return self.total_duration_ms / self.total_calls

    def get_summary(self) -> Dict[str, Any]:
        """
        ログのサマリーを取得

        Returns:
            集計されたサマリー情報
        """
        if not self.total_calls:
            return {
                "total_calls": 0,
                "average_duration_ms": 0,
                "interventions_suggested": 0,
                "by_operation": {},
            }

        return {
            "total_calls": self.total_calls,
            "average_duration_ms": round(self.average_duration_ms, 3),
            "total_duration_ms": round(self.total_duration_ms, 3),
            "interventions_suggested": sum(1 for log in self.logs if log.should_intervene),
            "by_operation": self._group_by_operation(),
        }

    def _group_by_operation(self) -> Dict[str, Any]:
        """解析の種類ごとに集計（保持しているログのみ）"""
        operations = {}
        for log in self.logs:
            if log.operation not in operations:
                operations[log.operation] = {
                    "calls": 0,
                    "duration_ms": 0.0,
                    "messages": 0,
                }
            operations[log.operation]["calls"] += 1
            operations[log.operation]["duration_ms"] += log.duration_ms
            operations[log.operation]["messages"] += log.message_count

        for operation in operations.values():
            operation["duration_ms"] = round(operation["duration_ms"], 3)

        return operations
