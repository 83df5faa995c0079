"""
图像预处理模块

样例匹配和自定义分类器共用同一套归一化：缩放到固定的正方形分辨率，
通道值缩放到 [0, 1]。
"""

import os
from typing import Optional

import cv2
import numpy as np
import torch

from utils.tensor_guard import TensorResourceGuard


def ensure_three_channels(image: np.ndarray) -> np.ndarray:
    """将灰度图或带透明通道的图像转换为三通道

    Args:
        image: 输入图像 (H, W) 或 (H, W, C)

    Returns:
        np.ndarray: 三通道图像 (H, W, 3)
    """
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.shape[2] == 1:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    return image


def normalize_image(image: np.ndarray, size: int = 224) -> np.ndarray:
    """归一化图像

    双线性缩放到 size x size，并将通道值缩放到 [0, 1]。

    Args:
        image: 输入图像 (H, W, C)，uint8
        size: 目标边长

    Returns:
        np.ndarray: float32 数组 (size, size, 3)
    """
    if image is None or image.size == 0:
        raise ValueError("输入图像为空")

    image = ensure_three_channels(image)
    resized = cv2.resize(image, (size, size), interpolation=cv2.INTER_LINEAR)
    return resized.astype(np.float32) / 255.0


def image_to_tensor(image: np.ndarray, size: int,
                    guard: Optional[TensorResourceGuard] = None) -> torch.Tensor:
    """将图像转换为归一化的 (C, H, W) 张量

    Args:
        image: 输入图像 (H, W, C)
        size: 目标边长
        guard: 资源守卫，非 None 时登记生成的张量

    Returns:
        torch.Tensor: float32 张量 (3, size, size)
    """
    normalized = normalize_image(image, size)
    tensor = torch.from_numpy(np.ascontiguousarray(normalized.transpose(2, 0, 1)))
    if guard is not None:
        guard.track(tensor)
    return tensor


def decode_image_bytes(data: bytes) -> np.ndarray:
    """解码上传的图片数据

    Args:
        data: 编码后的图片字节 (jpeg/png 等)

    Returns:
        np.ndarray: BGR 图像

    Raises:
        ValueError: 数据无法解码时抛出
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("无法解码图片数据")
    return image


def read_image_file(path: str) -> np.ndarray:
    """读取图片文件

    Args:
        path: 图片路径

    Returns:
        np.ndarray: BGR 图像

    Raises:
        ValueError: 文件不存在或无法解码时抛出
    """
    if not os.path.isfile(path):
        raise ValueError(f"图片文件不存在: {path}")
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError(f"无法读取图片文件: {path}")
    return image
