"""
检测器模块

包含通用物体检测器和自定义类别的样例匹配器。
"""

from .general_detector import GeneralDetector
from .exemplar_matcher import ExemplarMatcher

__all__ = ['GeneralDetector', 'ExemplarMatcher']
