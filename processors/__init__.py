"""
处理器模块

包含帧源和检测循环。
"""

from .frame_source import CameraFrameSource, ImageFrameSource
from .detection_loop import DetectionLoop

__all__ = ['CameraFrameSource', 'ImageFrameSource', 'DetectionLoop']
