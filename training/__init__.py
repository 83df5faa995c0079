"""
训练模块

包含训练样本集、可训练分类器、训练任务和模型存储。
"""

from .corpus import TrainingCorpus
from .classifier import ClassifierNet, TrainableClassifier
from .session import ActiveModelSlot, TrainingSession
from .model_store import FileModelBlobStore, InMemoryModelBlobStore

__all__ = [
    'TrainingCorpus',
    'ClassifierNet',
    'TrainableClassifier',
    'ActiveModelSlot',
    'TrainingSession',
    'FileModelBlobStore',
    'InMemoryModelBlobStore'
]
