"""
张量资源守卫模块

为推理和训练过程中创建的中间张量提供作用域管理。
作用域内登记的每个张量在作用域退出时（包括异常退出）恰好释放一次，
防止实时循环中内存无限增长。
"""

import logging
import threading
from typing import Any, Callable, List, Optional, Tuple

import torch


class TensorResourceGuard:
    """张量资源守卫

    以上下文管理器的方式使用::

        with TensorResourceGuard("match") as guard:
            tensor = guard.track(torch.zeros(3))
            ...

    作用域内通过 track() 登记的资源在退出时全部释放，
    通过 keep() 移交给调用者的资源不再由守卫负责。
    """

    _lock = threading.Lock()
    _outstanding = 0

    def __init__(self, name: str = "scope"):
        """初始化资源守卫

        Args:
            name: 作用域名称，用于日志
        """
        self.name = name
        self.logger = logging.getLogger(__name__)
        self._entries: List[Tuple[Any, Optional[Callable[[Any], None]]]] = []
        self._closed = False
        self._uses_cuda = False

        # 统计信息
        self.stats = {
            'tracked': 0,
            'released': 0,
            'kept': 0
        }

    @classmethod
    def outstanding(cls) -> int:
        """获取所有作用域中尚未释放的资源数量

        Returns:
            int: 未释放资源数量
        """
        with cls._lock:
            return cls._outstanding

    @classmethod
    def _adjust(cls, delta: int) -> None:
        with cls._lock:
            cls._outstanding += delta

    def track(self, resource: Any, release: Optional[Callable[[Any], None]] = None) -> Any:
        """登记需要在作用域退出时释放的资源

        Args:
            resource: 张量或其他资源
            release: 自定义释放函数，None时按张量处理

        Returns:
            Any: 原资源，便于链式调用
        """
        if self._closed:
            raise RuntimeError(f"资源作用域 {self.name} 已关闭")

        self._entries.append((resource, release))
        if isinstance(resource, torch.Tensor) and resource.is_cuda:
            self._uses_cuda = True
        self.stats['tracked'] += 1
        self._adjust(1)
        return resource

    def keep(self, resource: Any) -> Any:
        """将资源移交给调用者，退出作用域时不再释放

        Args:
            resource: 已登记的资源

        Returns:
            Any: 原资源
        """
        for index, (tracked, _) in enumerate(self._entries):
            if tracked is resource:
                del self._entries[index]
                self.stats['kept'] += 1
                self._adjust(-1)
                break
        return resource

    def release(self, resource: Any) -> None:
        """提前释放单个资源

        Args:
            resource: 已登记的资源
        """
        for index, (tracked, release_fn) in enumerate(self._entries):
            if tracked is resource:
                del self._entries[index]
                self._release_one(tracked, release_fn)
                break

    @property
    def size(self) -> int:
        """当前作用域中登记且未释放的资源数量"""
        return len(self._entries)

    def release_all(self) -> None:
        """释放作用域中所有资源"""
        errors = 0
        while self._entries:
            resource, release_fn = self._entries.pop()
            try:
                self._release_one(resource, release_fn)
            except Exception as e:
                errors += 1
                self.logger.error(f"释放资源失败 ({self.name}): {str(e)}")

        if self._uses_cuda and torch.cuda.is_available():
            torch.cuda.empty_cache()
            self._uses_cuda = False

        if errors:
            self.logger.warning(f"作用域 {self.name} 有 {errors} 个资源释放出错")

    def _release_one(self, resource: Any, release_fn: Optional[Callable[[Any], None]]) -> None:
        """释放单个资源，无论释放函数是否出错都计入已释放"""
        # 张量在最后一个引用消失时由 torch 回收，这里只需丢弃守卫持有的引用
        try:
            if release_fn is not None:
                release_fn(resource)
        finally:
            self.stats['released'] += 1
            self._adjust(-1)

    def __enter__(self) -> 'TensorResourceGuard':
        """上下文管理器入口"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器出口，释放所有登记的资源"""
        self.release_all()
        self._closed = True
        if exc_type is not None:
            self.logger.debug(f"作用域 {self.name} 因异常退出，已释放全部资源: {exc_type.__name__}")
        return False
