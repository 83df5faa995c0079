"""
训练任务单元测试

训练任务是协程，测试中用 asyncio.run 驱动。
"""

import asyncio
import unittest
from unittest.mock import Mock

import numpy as np

from models.data_models import Config, EpochLog
from models.exceptions import PersistenceError, ValidationError
from training.classifier import TrainableClassifier
from training.corpus import TrainingCorpus
from training.model_store import InMemoryModelBlobStore
from training.session import ActiveModelSlot, TrainingSession
from utils.log_sink import LogSink, ProgressChannel
from utils.tensor_guard import TensorResourceGuard


def fill_corpus(corpus: TrainingCorpus, counts: dict) -> TrainingCorpus:
    rng = np.random.RandomState(0)
    for index, (name, count) in enumerate(counts.items()):
        corpus.add_class(name)
        base = 40 + 150 * index
        for _ in range(count):
            corpus.add_example(name, np.clip(rng.normal(base, 10, (24, 24, 3)), 0, 255).astype(np.uint8))
    return corpus


def ready_model() -> Mock:
    model = Mock()
    model.is_ready = True
    return model


class CancelAfterFirstEpoch(ProgressChannel):
    """收到第一轮进度后请求取消"""

    def __init__(self):
        super().__init__()
        self.session = None

    def emit(self, kind, message="", **fields):
        if kind == "epoch" and self.session is not None:
            self.session.cancel()
        return super().emit(kind, message, **fields)


class FailingClassifier(TrainableClassifier):
    """第二轮训练时失败的分类器"""

    def iter_fit(self, *args, **kwargs):
        yield EpochLog(epoch=0, loss=0.7, accuracy=0.5)
        raise FloatingPointError("第 2 轮训练损失发散: nan")


class BrokenStore(InMemoryModelBlobStore):
    def save(self, key, blob):
        raise PersistenceError(key, "磁盘已满")


class TestTrainingSession(unittest.TestCase):
    """训练任务测试类"""

    def setUp(self):
        self.config = Config(input_size=32, epochs=3, batch_size=4, learning_rate=0.005)
        self.active = ActiveModelSlot()
        self.channel = ProgressChannel()
        self.sink = LogSink("test.training")
        self.baseline = TensorResourceGuard.outstanding()

    def make_session(self, **kwargs) -> TrainingSession:
        params = dict(config=self.config, active_model=self.active,
                      channel=self.channel, log_sink=self.sink)
        params.update(kwargs)
        return TrainingSession(**params)

    def kinds(self):
        return [event.kind for event in self.channel.drain()]

    def test_rejects_single_class(self):
        """测试只有一个类别时拒绝训练"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5})

        with self.assertRaises(ValidationError):
            asyncio.run(self.make_session().run(corpus))

        self.assertIsNone(self.active.get())
        self.assertEqual(self.kinds(), ["failed"])

    def test_rejects_class_with_four_examples(self):
        """测试某个类别只有四个样本时拒绝训练"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 4})

        with self.assertRaises(ValidationError) as context:
            asyncio.run(self.make_session().run(corpus))

        self.assertIn("mug (4)", str(context.exception))
        self.assertIsNone(self.active.get())

    def test_empty_class_counts_as_insufficient(self):
        """测试没有样本的类别同样不满足条件"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        corpus.add_class("bowl")

        with self.assertRaises(ValidationError):
            asyncio.run(self.make_session().run(corpus))

    def test_empty_injected_sink_receives_lines(self):
        """测试传入的空日志输出收到训练日志"""
        session = self.make_session()
        self.assertIs(session.log_sink, self.sink)
        self.assertIs(session.channel, self.channel)

        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        asyncio.run(session.run(corpus))

        self.assertGreater(len(self.sink), 0)

    def test_successful_training_activates_model(self):
        """测试两个类别各五个样本时训练成功并启用新模型"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        store = InMemoryModelBlobStore()

        result = asyncio.run(self.make_session(store=store).run(corpus))

        self.assertTrue(result.success)
        self.assertEqual(result.epochs_completed, 3)
        self.assertEqual(len(result.history), 3)
        self.assertTrue(result.persisted)
        self.assertTrue(store.exists(self.config.model_key))

        model = self.active.get()
        self.assertIsNotNone(model)
        self.assertEqual(set(model.labels), {"cup", "mug"})

        kinds = self.kinds()
        self.assertEqual(kinds[0], "started")
        self.assertEqual(kinds.count("epoch"), 3)
        self.assertEqual(kinds[-1], "completed")
        self.assertTrue(any("第 3/3 轮" in line for line in self.sink.lines()))
        self.assertEqual(TensorResourceGuard.outstanding(), self.baseline)

    def test_progress_reaches_100(self):
        """测试进度按轮次递增到 100"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})

        asyncio.run(self.make_session().run(corpus))

        progress = [e.progress for e in self.channel.drain() if e.kind == "epoch"]
        self.assertEqual(len(progress), 3)
        self.assertAlmostEqual(progress[-1], 100.0)
        self.assertEqual(progress, sorted(progress))

    def test_cancel_keeps_previous_model(self):
        """测试取消训练时保留原有模型"""
        previous = ready_model()
        self.active.set(previous)
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        self.channel = CancelAfterFirstEpoch()
        session = self.make_session()
        self.channel.session = session

        result = asyncio.run(session.run(corpus))

        self.assertFalse(result.success)
        self.assertTrue(result.cancelled)
        self.assertEqual(result.epochs_completed, 1)
        self.assertIs(self.active.get(), previous)
        self.assertIn("cancelled", self.kinds())
        self.assertEqual(TensorResourceGuard.outstanding(), self.baseline)

    def test_closed_channel_cancels_training(self):
        """测试关闭进度通道等同于取消"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        self.channel.close()

        result = asyncio.run(self.make_session().run(corpus))

        self.assertTrue(result.cancelled)
        self.assertEqual(result.epochs_completed, 0)
        self.assertIsNone(self.active.get())

    def test_failure_keeps_previous_model(self):
        """测试训练中途失败时保留原有模型"""
        previous = ready_model()
        self.active.set(previous)
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        session = self.make_session(
            classifier_factory=lambda: FailingClassifier(input_size=32, device='cpu')
        )

        result = asyncio.run(session.run(corpus))

        self.assertFalse(result.success)
        self.assertFalse(result.cancelled)
        self.assertIn("发散", result.error)
        self.assertEqual(result.epochs_completed, 1)
        self.assertIs(self.active.get(), previous)
        self.assertEqual(self.kinds()[-1], "failed")

    def test_persistence_failure_keeps_new_model(self):
        """测试保存失败只报告错误，新模型仍然启用"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})

        result = asyncio.run(self.make_session(store=BrokenStore()).run(corpus))

        self.assertTrue(result.success)
        self.assertFalse(result.persisted)
        self.assertIsNotNone(self.active.get())
        self.assertTrue(any("模型保存失败" in line for line in self.sink.lines()))

    def test_training_uses_snapshot(self):
        """测试训练期间新增的样本不影响本次训练"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})

        async def scenario():
            task = asyncio.create_task(self.make_session().run(corpus))
            await asyncio.sleep(0)
            corpus.add_class("bowl")
            return await task

        result = asyncio.run(scenario())

        self.assertTrue(result.success)
        self.assertEqual(result.labels, ["cup", "mug"])

    def test_detection_continues_between_epochs(self):
        """测试训练期间事件循环上的其他任务可以运行"""
        corpus = fill_corpus(TrainingCorpus(), {"cup": 5, "mug": 5})
        beats = []

        async def heartbeat(stop: asyncio.Event):
            while not stop.is_set():
                beats.append(1)
                await asyncio.sleep(0)

        async def scenario():
            stop = asyncio.Event()
            beat_task = asyncio.create_task(heartbeat(stop))
            result = await self.make_session().run(corpus)
            stop.set()
            await beat_task
            return result

        result = asyncio.run(scenario())

        self.assertTrue(result.success)
        self.assertGreater(len(beats), 3)


class TestActiveModelSlot(unittest.TestCase):
    """当前模型测试类"""

    def test_rejects_unready_model(self):
        model = Mock()
        model.is_ready = False

        with self.assertRaises(ValueError):
            ActiveModelSlot().set(model)

    def test_set_and_clear(self):
        slot = ActiveModelSlot()
        model = ready_model()
        slot.set(model)
        self.assertIs(slot.get(), model)
        slot.clear()
        self.assertIsNone(slot.get())


if __name__ == '__main__':
    unittest.main()
