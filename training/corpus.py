"""
训练样本集模块

按类别保存采集或上传的样本图片。类别按创建顺序排列，
每个类别的样本只追加不删除，只能整体清空。
"""

import logging
import threading
from typing import Dict, List, Tuple

import numpy as np

from utils.image_ops import decode_image_bytes, ensure_three_channels, read_image_file


class TrainingCorpus:
    """训练样本集

    由外部的采集/上传操作修改，由样例匹配器和训练任务读取。
    训练任务使用 snapshot() 获取快照，训练期间的新增样本不影响本次训练。
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._examples: Dict[str, List[np.ndarray]] = {}
        self._lock = threading.RLock()

    def add_class(self, class_name: str) -> bool:
        """添加自定义类别

        Args:
            class_name: 类别名称

        Returns:
            bool: 新增成功返回 True，名称为空或已存在返回 False
        """
        name = (class_name or "").strip()
        if not name:
            return False

        with self._lock:
            if name in self._examples:
                return False
            self._examples[name] = []

        self.logger.info(f"已添加自定义类别: {name}")
        return True

    def add_example(self, class_name: str, image: np.ndarray) -> int:
        """为类别追加一张样本图片

        Args:
            class_name: 类别名称，必须已存在
            image: 解码后的图像 (H, W, C)

        Returns:
            int: 该类别当前的样本数量

        Raises:
            KeyError: 类别不存在时抛出
            ValueError: 图像为空时抛出
        """
        if image is None or image.size == 0:
            raise ValueError("样本图像为空")

        example = np.array(ensure_three_channels(image), copy=True)
        # 样本采集后不可修改
        example.setflags(write=False)

        with self._lock:
            if class_name not in self._examples:
                raise KeyError(f"类别不存在: {class_name}")
            self._examples[class_name].append(example)
            count = len(self._examples[class_name])

        self.logger.debug(f"类别 {class_name} 新增样本，当前 {count} 张")
        return count

    def add_example_from_bytes(self, class_name: str, data: bytes) -> int:
        """解码上传的图片数据并追加为样本"""
        return self.add_example(class_name, decode_image_bytes(data))

    def add_example_from_file(self, class_name: str, path: str) -> int:
        """读取图片文件并追加为样本"""
        return self.add_example(class_name, read_image_file(path))

    def class_names(self) -> List[str]:
        """按创建顺序返回所有类别名称"""
        with self._lock:
            return list(self._examples)

    def examples(self, class_name: str) -> Tuple[np.ndarray, ...]:
        """获取某个类别的样本

        Args:
            class_name: 类别名称

        Returns:
            Tuple[np.ndarray, ...]: 样本图像，类别不存在时为空
        """
        with self._lock:
            return tuple(self._examples.get(class_name, ()))

    def count(self, class_name: str) -> int:
        """获取某个类别的样本数量"""
        with self._lock:
            return len(self._examples.get(class_name, ()))

    def counts(self) -> Dict[str, int]:
        """获取所有类别的样本数量"""
        with self._lock:
            return {name: len(items) for name, items in self._examples.items()}

    def non_empty_classes(self) -> List[str]:
        """获取至少有一个样本的类别"""
        with self._lock:
            return [name for name, items in self._examples.items() if items]

    def snapshot(self) -> Dict[str, Tuple[np.ndarray, ...]]:
        """获取样本集快照

        样本本身不可修改，快照只需复制每个类别的序列。

        Returns:
            Dict[str, Tuple[np.ndarray, ...]]: 类别到样本序列的映射
        """
        with self._lock:
            return {name: tuple(items) for name, items in self._examples.items()}

    def clear(self) -> None:
        """清空所有类别和样本"""
        with self._lock:
            self._examples.clear()
        self.logger.info("训练样本集已清空")

    def __contains__(self, class_name: str) -> bool:
        with self._lock:
            return class_name in self._examples

    def __len__(self) -> int:
        with self._lock:
            return len(self._examples)
