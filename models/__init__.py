"""
数据模型模块

包含系统中使用的核心数据类、接口和异常定义。
"""

from .data_models import (
    Config,
    Frame,
    Detection,
    DetectionSource,
    DetectionState,
    EpochLog,
    LoopState,
    ModelState,
    TrainingResult,
    count_objects
)
from .interfaces import IConfigManager, IFrameSource, IGeneralDetector, IModelBlobStore
from .exceptions import (
    ObjectDetectionError,
    ModelLoadError,
    FrameNotReadyError,
    InferenceError,
    ModelNotReadyError,
    ValidationError,
    PersistenceError,
    NotFoundError,
    TrainingCancelledError,
    ConfigurationError
)

__all__ = [
    # 数据模型
    'Config',
    'Frame',
    'Detection',
    'DetectionSource',
    'DetectionState',
    'EpochLog',
    'LoopState',
    'ModelState',
    'TrainingResult',
    'count_objects',

    # 接口定义
    'IConfigManager',
    'IFrameSource',
    'IGeneralDetector',
    'IModelBlobStore',

    # 异常类
    'ObjectDetectionError',
    'ModelLoadError',
    'FrameNotReadyError',
    'InferenceError',
    'ModelNotReadyError',
    'ValidationError',
    'PersistenceError',
    'NotFoundError',
    'TrainingCancelledError',
    'ConfigurationError'
]
