"""
核心数据模型定义

包含系统中使用的核心数据类和配置模型。
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import numpy as np


class DetectionSource(Enum):
    """检测结果来源

    通用检测器、样例匹配器和自定义训练模型的结果合并到同一列表时，
    通过来源标签区分。
    """
    GENERAL = "general"
    EXEMPLAR = "exemplar"
    TRAINED = "trained"


class ModelState(Enum):
    """可训练模型的生命周期状态"""
    CREATED = "created"
    BUILT = "built"
    TRAINED = "trained"


class LoopState(Enum):
    """检测循环的调度状态"""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"


@dataclass
class Config:
    """系统配置数据类

    包含所有系统配置参数，支持从配置文件和命令行参数加载。
    最少样本数和最少类别数是固定策略，不能通过配置覆盖。
    """
    source: str = "0"
    model_path: Optional[str] = None
    confidence_threshold: float = 0.5
    acceptance_threshold: float = 0.7
    input_size: int = 224
    epochs: int = 10
    batch_size: int = 16
    validation_fraction: float = 0.2
    learning_rate: float = 0.001
    min_examples_per_class: int = 5
    min_classes: int = 2
    tick_interval: float = 1.0 / 60
    retry_backoff: float = 0.1
    max_frame_retries: int = 50
    continuous: bool = True
    model_key: str = "custom-object-detection-model"
    model_store_dir: str = "model_store"
    log_level: str = "INFO"
    log_file_path: Optional[str] = None
    enable_console_log: bool = True


@dataclass(frozen=True)
class Frame:
    """视频帧数据类

    像素数据为 (H, W, C) 的 uint8 数组，通道顺序与 OpenCV 一致。
    """
    pixels: np.ndarray
    width: int
    height: int

    @classmethod
    def from_array(cls, pixels: np.ndarray) -> 'Frame':
        """根据像素数组创建帧"""
        height, width = pixels.shape[:2]
        return cls(pixels=pixels, width=int(width), height=int(height))

    @property
    def full_extent(self) -> Tuple[float, float, float, float]:
        """整帧边界框 (x, y, width, height)"""
        return (0.0, 0.0, float(self.width), float(self.height))


@dataclass(frozen=True)
class Detection:
    """检测结果数据类

    单个物体的检测结果，每次循环重新生成，创建后不再修改。
    """
    class_name: str
    score: float
    bbox: Tuple[float, float, float, float]  # (x, y, width, height)
    source: DetectionSource = DetectionSource.GENERAL

    def identity(self) -> Tuple[str, Tuple[float, float, float, float]]:
        """按类别和边界框标识检测结果"""
        return (self.class_name, self.bbox)


def count_objects(detections: List[Detection]) -> Dict[str, int]:
    """统计检测结果中每个类别出现的次数

    Args:
        detections: 检测结果列表

    Returns:
        Dict[str, int]: 类别名称到数量的映射
    """
    return dict(Counter(detection.class_name for detection in detections))


@dataclass(frozen=True)
class DetectionState:
    """已发布的检测状态

    检测结果和类别计数作为一个整体替换，读取方不会看到新旧混合的状态。
    """
    detections: Tuple[Detection, ...] = ()
    object_counts: Dict[str, int] = field(default_factory=dict)
    generation: int = 0
    tick_number: int = 0
    timestamp: float = 0.0


@dataclass
class EpochLog:
    """单轮训练日志"""
    epoch: int
    loss: float
    accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None


@dataclass
class TrainingResult:
    """训练结果数据类"""
    success: bool
    labels: List[str] = field(default_factory=list)
    epochs_completed: int = 0
    history: List[EpochLog] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False
    persisted: bool = False

    @property
    def final_accuracy(self) -> Optional[float]:
        """最后一轮的训练准确率"""
        if not self.history:
            return None
        return self.history[-1].accuracy
