"""
样例匹配器实现

将当前帧与某个自定义类别保存的样例图片逐一比较，
取最高的余弦相似度，超过接受阈值时报告一次整帧检测。
"""

import logging
from typing import Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F

from models.data_models import Detection, DetectionSource, Frame
from models.exceptions import InferenceError
from utils.image_ops import image_to_tensor
from utils.tensor_guard import TensorResourceGuard


class ExemplarMatcher:
    """样例匹配器

    归一化方式：缩放到固定的正方形分辨率，通道值缩放到 [0, 1]；
    相似度：展平后的归一化向量之间的余弦相似度。
    不做定位，匹配成功时边界框为整帧范围。
    """

    def __init__(self, acceptance_threshold: float = 0.7, input_size: int = 224):
        """初始化样例匹配器

        Args:
            acceptance_threshold: 接受阈值，最高相似度需超过该值
            input_size: 归一化后的边长
        """
        self.logger = logging.getLogger(__name__)
        self.acceptance_threshold = acceptance_threshold
        self.input_size = input_size

    def similarity(self, image_a: np.ndarray, image_b: np.ndarray) -> float:
        """计算两张图像之间的余弦相似度

        Args:
            image_a: 图像 (H, W, C)
            image_b: 图像 (H, W, C)

        Returns:
            float: 余弦相似度
        """
        with TensorResourceGuard("similarity") as guard:
            vector_a = guard.track(image_to_tensor(image_a, self.input_size, guard).flatten())
            vector_b = guard.track(image_to_tensor(image_b, self.input_size, guard).flatten())
            return self._cosine(vector_a, vector_b, guard)

    def _cosine(self, vector_a: torch.Tensor, vector_b: torch.Tensor,
                guard: TensorResourceGuard) -> float:
        score = guard.track(F.cosine_similarity(vector_a, vector_b, dim=0, eps=1e-8))
        # 全黑图像没有方向，相似度按 0 处理
        return float(score.clamp(-1.0, 1.0).item())

    def match(self, frame: Frame, class_name: str,
              exemplars: Sequence[np.ndarray]) -> Optional[Detection]:
        """在帧上匹配某个类别的样例

        Args:
            frame: 当前帧
            class_name: 类别名称
            exemplars: 该类别保存的样例图片

        Returns:
            Optional[Detection]: 最高相似度超过接受阈值时返回检测结果，否则返回 None

        Raises:
            InferenceError: 相似度计算失败时抛出
        """
        if not exemplars:
            return None

        best_score = -np.inf

        try:
            with TensorResourceGuard(f"match:{class_name}") as guard:
                frame_vector = guard.track(
                    image_to_tensor(frame.pixels, self.input_size, guard).flatten()
                )

                for exemplar in exemplars:
                    exemplar_vector = guard.track(
                        image_to_tensor(exemplar, self.input_size, guard).flatten()
                    )
                    score = self._cosine(frame_vector, exemplar_vector, guard)
                    if score > best_score:
                        best_score = score
        except (ValueError, RuntimeError) as e:
            raise InferenceError(f"样例匹配失败 ({class_name}): {str(e)}") from e

        self.logger.debug(f"样例匹配 {class_name}: 最高相似度 {best_score:.3f} "
                          f"(阈值: {self.acceptance_threshold})")

        if best_score > self.acceptance_threshold:
            return Detection(
                class_name=class_name,
                score=float(min(max(best_score, 0.0), 1.0)),
                bbox=frame.full_extent,
                source=DetectionSource.EXEMPLAR
            )

        return None
