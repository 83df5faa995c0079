"""
性能监控工具模块

提供检测循环的吞吐量统计和进程内存监控功能。
"""

import gc
import time
import logging
from typing import Callable, Optional

import psutil


class ThroughputCounter:
    """吞吐量计数器

    按一秒的时间窗口统计循环次数。窗口溢出时给出当前每秒循环次数并重置计数。
    """

    def __init__(self, window_seconds: float = 1.0,
                 clock: Optional[Callable[[], float]] = None):
        """初始化吞吐量计数器

        Args:
            window_seconds: 统计窗口长度（秒）
            clock: 时钟函数，默认使用 time.monotonic
        """
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._window_start = self._clock()
        self._window_ticks = 0
        self.current_rate = 0
        self.total_ticks = 0

    def tick(self) -> Optional[int]:
        """记录一次循环

        Returns:
            Optional[int]: 窗口溢出时返回每秒循环次数，否则返回 None
        """
        now = self._clock()
        self._window_ticks += 1
        self.total_ticks += 1

        elapsed = now - self._window_start
        if elapsed > self.window_seconds:
            self.current_rate = int(round(self._window_ticks / elapsed))
            self._window_ticks = 0
            self._window_start = now
            return self.current_rate

        return None

    def reset(self) -> None:
        """重置统计窗口"""
        self._window_start = self._clock()
        self._window_ticks = 0
        self.current_rate = 0


class MemoryMonitor:
    """内存监控器

    定期采样进程内存，内存超过限制时执行垃圾回收。
    """

    def __init__(self, max_memory_mb: Optional[int] = None, sample_interval: float = 5.0):
        """初始化内存监控器

        Args:
            max_memory_mb: 最大内存使用量（MB），None表示不限制
            sample_interval: 采样间隔（秒）
        """
        self.max_memory_mb = max_memory_mb
        self.sample_interval = sample_interval
        self.logger = logging.getLogger(__name__)
        self.process = psutil.Process()
        self._last_sample_time = 0.0

        # 统计信息
        self.stats = {
            'gc_count': 0,
            'peak_memory_mb': 0.0,
            'last_memory_mb': 0.0,
            'memory_warnings': 0
        }

    def sample(self, force: bool = False) -> float:
        """采样进程内存

        Args:
            force: 忽略采样间隔强制采样

        Returns:
            float: 最近一次采样的内存使用量（MB）
        """
        now = time.monotonic()
        if not force and now - self._last_sample_time < self.sample_interval:
            return self.stats['last_memory_mb']
        self._last_sample_time = now

        try:
            memory_mb = self.process.memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            self.logger.error(f"获取内存使用信息失败: {str(e)}")
            return self.stats['last_memory_mb']

        self.stats['last_memory_mb'] = memory_mb
        if memory_mb > self.stats['peak_memory_mb']:
            self.stats['peak_memory_mb'] = memory_mb

        if self.max_memory_mb and memory_mb > self.max_memory_mb:
            self.logger.warning(f"进程内存使用超过限制: {memory_mb:.1f} MB > {self.max_memory_mb} MB")
            self.stats['memory_warnings'] += 1
            collected = gc.collect()
            self.stats['gc_count'] += 1
            self.logger.info(f"垃圾回收完成，回收对象: {collected}")

        return memory_mb

    def get_memory_stats(self) -> dict:
        """获取内存统计信息

        Returns:
            dict: 统计信息
        """
        return {
            **self.stats,
            'max_memory_limit_mb': self.max_memory_mb
        }
