"""
进度与日志输出模块

提供供外部界面读取的日志行序列、检测历史环形缓冲区，
以及训练进度的消息通道。
"""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from models.data_models import DetectionState


class LogSink:
    """日志行输出

    只追加、保持顺序的可读日志行序列，同时写入 logging 日志。
    """

    def __init__(self, logger_name: str = "progress"):
        """初始化日志输出

        Args:
            logger_name: 同步写入的日志记录器名称
        """
        self.logger = logging.getLogger(logger_name)
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def append(self, line: str, level: int = logging.INFO) -> None:
        """追加一行日志

        Args:
            line: 日志文本
            level: 同步写入 logging 时使用的级别
        """
        with self._lock:
            self._lines.append(line)
        self.logger.log(level, line)

    def lines(self) -> List[str]:
        """获取所有日志行的快照"""
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class DetectionHistory:
    """检测历史记录

    保留最近发布的检测状态，超过容量时丢弃最旧的记录。
    """

    def __init__(self, capacity: int = 100):
        if capacity <= 0:
            raise ValueError("历史记录容量必须是正整数")
        self.capacity = capacity
        self._records: Deque[DetectionState] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(self, state: DetectionState) -> None:
        """记录一次发布的检测状态"""
        with self._lock:
            self._records.append(state)

    def records(self) -> List[DetectionState]:
        """获取历史记录快照，按时间从旧到新"""
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        """清空历史记录"""
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass(frozen=True)
class ProgressEvent:
    """训练进度事件

    kind 取值: started, epoch, log, completed, failed, cancelled, closed
    """
    kind: str
    message: str = ""
    epoch: Optional[int] = None
    progress: float = 0.0
    loss: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: float = 0.0


class ProgressChannel:
    """训练进度消息通道

    训练过程向通道发送事件，界面按自己的节奏读取，
    训练节奏和显示节奏互不影响。关闭通道表示请求中止训练。
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self.logger = logging.getLogger(__name__)

    def emit(self, kind: str, message: str = "", **fields) -> bool:
        """发送进度事件

        Args:
            kind: 事件类型
            message: 事件描述
            **fields: ProgressEvent 的其他字段

        Returns:
            bool: 通道已关闭时返回 False
        """
        if self._closed.is_set():
            return False

        self._put(ProgressEvent(kind=kind, message=message, timestamp=time.time(), **fields))
        return True

    def _put(self, event: ProgressEvent) -> None:
        """放入事件，通道已满时丢弃最旧的事件，保证训练不被显示阻塞"""
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.logger.debug("进度通道已满，丢弃最旧的事件")
                except queue.Empty:
                    pass

    def drain(self) -> List[ProgressEvent]:
        """取出当前所有事件，不阻塞

        Returns:
            List[ProgressEvent]: 按发送顺序排列的事件
        """
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def close(self) -> None:
        """关闭通道"""
        if self._closed.is_set():
            return
        self._closed.set()
        self._put(ProgressEvent(kind="closed", message="进度通道已关闭", timestamp=time.time()))

    @property
    def closed(self) -> bool:
        """通道是否已关闭"""
        return self._closed.is_set()
