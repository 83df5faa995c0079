"""
检测循环单元测试

使用模拟的通用检测器和静态图片帧源，测试单次循环的合并与发布、
实时调度、模式切换和错误处理。
"""

import asyncio
import threading
import unittest
from unittest.mock import Mock, patch

import numpy as np

from models.data_models import (
    Config,
    Detection,
    DetectionSource,
    Frame,
    LoopState
)
from models.exceptions import FrameNotReadyError, InferenceError, ModelLoadError
from processors.detection_loop import DetectionLoop
from processors.frame_source import ImageFrameSource
from training.corpus import TrainingCorpus
from training.session import ActiveModelSlot
from utils.log_sink import DetectionHistory, LogSink


FRAME_PIXELS = np.kron(
    np.array([[0, 255], [255, 0]], dtype=np.uint8)[:, :, None],
    np.ones((16, 16, 3), dtype=np.uint8)
)


class FakeDetector:
    """模拟的通用检测器，按阈值过滤预设结果"""

    def __init__(self, candidates=None, loaded=True):
        self.candidates = list(candidates or [])
        self.is_loaded = loaded
        self.thresholds = []
        self.failures = 0
        self.gate = None
        self.entered = threading.Event()

    def detect(self, frame, score_threshold):
        self.thresholds.append(score_threshold)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.failures > 0:
            self.failures -= 1
            raise InferenceError("模拟推理失败")
        return [d for d in self.candidates if d.score >= score_threshold]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def person(score=0.9):
    return Detection("person", score, (10.0, 10.0, 20.0, 40.0))


class DetectionLoopTestCase(unittest.TestCase):
    """检测循环测试基类"""

    def setUp(self):
        self.config = Config(input_size=16, tick_interval=0.005, retry_backoff=0.001,
                             max_frame_retries=3)
        self.source = ImageFrameSource(FRAME_PIXELS)
        self.detector = FakeDetector()
        self.corpus = TrainingCorpus()
        self.active = ActiveModelSlot()
        self.sink = LogSink("test.detection")
        self.clock = FakeClock()

    def make_loop(self, **kwargs) -> DetectionLoop:
        params = dict(frame_source=self.source, detector=self.detector, corpus=self.corpus,
                      config=self.config, active_model=self.active, log_sink=self.sink,
                      clock=self.clock)
        params.update(kwargs)
        return DetectionLoop(**params)


class TestDetectionTick(DetectionLoopTestCase):
    """单次循环测试类"""

    def test_empty_scene(self):
        """测试没有物体且没有自定义类别时发布空结果"""
        loop = self.make_loop()
        loop.confidence_threshold = 0.3

        state = asyncio.run(loop.tick())

        self.assertEqual(state.detections, ())
        self.assertEqual(state.object_counts, {})
        self.assertIs(loop.detection_state, state)
        self.assertEqual(self.detector.thresholds, [0.3])

    def test_general_detections_filtered_by_threshold(self):
        """测试通用检测结果按当前阈值过滤"""
        self.detector.candidates = [person(0.9), Detection("car", 0.4, (0.0, 0.0, 5.0, 5.0))]
        loop = self.make_loop()

        state = asyncio.run(loop.tick())

        self.assertEqual(state.object_counts, {"person": 1})
        self.assertTrue(all(d.score >= loop.confidence_threshold for d in state.detections))

    def test_merges_exemplar_matches(self):
        """测试合并样例匹配结果并计数"""
        self.detector.candidates = [person(), person(0.8)]
        self.corpus.add_class("board")
        self.corpus.add_example("board", FRAME_PIXELS)
        self.corpus.add_class("empty")
        loop = self.make_loop()

        state = asyncio.run(loop.tick())

        self.assertEqual(state.object_counts, {"person": 2, "board": 1})
        board = loop.details_for("board")
        self.assertEqual(len(board), 1)
        self.assertEqual(board[0].source, DetectionSource.EXEMPLAR)
        self.assertEqual(board[0].bbox, (0.0, 0.0, 32.0, 32.0))
        self.assertEqual(loop.details_for("empty"), [])
        for name in state.object_counts:
            self.assertIn(name, self.corpus.class_names() + ["person"])

    def test_counts_match_detections(self):
        """测试计数总和等于检测结果数量"""
        self.detector.candidates = [person(), person(0.7), Detection("cup", 0.6, (0.0, 0.0, 1.0, 1.0))]
        loop = self.make_loop()

        state = asyncio.run(loop.tick())

        self.assertEqual(sum(state.object_counts.values()), len(state.detections))

    def test_active_model_replaces_matcher(self):
        """测试存在自定义模型时不再运行样例匹配"""
        self.corpus.add_class("cup")
        self.corpus.add_example("cup", FRAME_PIXELS)
        model = Mock()
        model.is_ready = True
        model.predict.return_value = [
            Detection("cup", 0.92, (0.0, 0.0, 32.0, 32.0), DetectionSource.TRAINED)
        ]
        self.active.set(model)
        matcher = Mock()
        loop = self.make_loop(matcher=matcher)

        state = asyncio.run(loop.tick())

        self.assertEqual(state.object_counts, {"cup": 1})
        model.predict.assert_called_once()
        matcher.match.assert_not_called()

    def test_use_model_registers_labels(self):
        """测试启用模型时标签加入训练样本集"""
        model = Mock()
        model.is_ready = True
        model.labels = ["cup", "mug"]
        loop = self.make_loop()

        loop.use_model(model)

        self.assertEqual(self.corpus.class_names(), ["cup", "mug"])
        self.assertIs(self.active.get(), model)

    def test_frame_not_ready_retries_then_fails(self):
        """测试帧未就绪时有限次重试"""
        loop = self.make_loop(frame_source=ImageFrameSource())

        with self.assertRaises(FrameNotReadyError):
            asyncio.run(loop.tick())

        self.assertEqual(loop.stats['frame_retries'], 3)
        self.assertEqual(self.detector.thresholds, [])

    def test_explicit_frame_skips_source(self):
        """测试传入有效帧时不读取帧源"""
        source = Mock()
        loop = self.make_loop(frame_source=source)

        asyncio.run(loop.tick(Frame.from_array(FRAME_PIXELS)))

        source.current_frame.assert_not_called()

    def test_detector_not_loaded(self):
        """测试通用检测器未加载"""
        self.detector.is_loaded = False
        loop = self.make_loop()

        with self.assertRaises(ModelLoadError):
            asyncio.run(loop.tick())

    def test_inference_error_propagates_from_tick(self):
        """测试单次循环的推理错误向上抛出且不发布"""
        self.detector.failures = 1
        loop = self.make_loop()

        with self.assertRaises(InferenceError):
            asyncio.run(loop.tick())

        self.assertEqual(loop.detection_state.tick_number, 0)

    def test_unexpected_error_wrapped(self):
        """测试检测器的其他异常转换为 InferenceError"""
        detector = Mock()
        detector.is_loaded = True
        detector.detect.side_effect = RuntimeError("设备错误")
        loop = self.make_loop(detector=detector)

        with self.assertRaises(InferenceError):
            asyncio.run(loop.tick())

    def test_threshold_validation(self):
        """测试阈值必须在 (0, 1) 之间"""
        loop = self.make_loop()

        with self.assertRaises(ValueError):
            loop.confidence_threshold = 1.0
        self.assertEqual(loop.confidence_threshold, 0.5)

    def test_empty_injected_sink_and_history_kept(self):
        """测试传入的空日志输出和空历史记录被直接使用"""
        history = DetectionHistory()
        loop = self.make_loop(history=history)

        self.assertIs(loop.log_sink, self.sink)
        self.assertIs(loop.history, history)

        asyncio.run(loop.tick())
        self.assertEqual(len(history), 1)

    def test_history_records_published_states(self):
        """测试发布的状态写入历史记录"""
        loop = self.make_loop()

        async def run_ticks():
            for _ in range(3):
                await loop.tick()

        asyncio.run(run_ticks())

        self.assertEqual([s.tick_number for s in loop.history.records()], [1, 2, 3])

    def test_throughput_updates_fps(self):
        """测试每个统计窗口更新帧率"""
        loop = self.make_loop()

        async def run_ticks():
            for now in (0.5, 1.0, 1.6):
                self.clock.now = now
                await loop.tick()

        asyncio.run(run_ticks())

        self.assertEqual(loop.fps, 2)


class TestDetectionScheduling(DetectionLoopTestCase):
    """实时调度测试类"""

    def test_live_mode_publishes_repeatedly(self):
        """测试实时模式持续发布新状态"""
        self.detector.candidates = [person()]
        loop = self.make_loop()

        asyncio.run(loop.run_for(0.1))

        self.assertGreater(loop.stats['ticks'], 2)
        self.assertEqual(loop.state, LoopState.IDLE)
        self.assertFalse(loop.has_pending_tick)
        self.assertEqual(loop.object_counts, {"person": 1})

    def test_switch_to_single_shot_cancels_pending_tick(self):
        """测试切换到单次模式后取消下一次循环，不再发布"""
        self.detector.candidates = [person()]
        loop = self.make_loop()

        async def scenario():
            loop.start()
            await asyncio.sleep(0.05)
            published_before = loop.stats['published']

            loop.set_continuous(False)
            self.assertFalse(loop.has_pending_tick)
            cleared = loop.detection_state
            self.assertEqual(cleared.detections, ())
            self.assertEqual(cleared.object_counts, {})

            await asyncio.sleep(0.05)
            await loop.wait_idle()
            self.assertIs(loop.detection_state, cleared)
            self.assertEqual(loop.state, LoopState.IDLE)
            self.assertGreater(published_before, 0)

            state = await loop.detect_once()
            self.assertIs(loop.detection_state, state)
            self.assertEqual(state.object_counts, {"person": 1})
            self.assertIsNotNone(loop.captured_frame)

        asyncio.run(scenario())

    def test_stale_tick_discarded_after_mode_switch(self):
        """测试切换前开始、切换后完成的循环结果被丢弃"""
        self.detector.candidates = [person()]
        self.detector.gate = threading.Event()
        loop = self.make_loop()

        async def scenario():
            task = asyncio.create_task(loop.tick())
            while not self.detector.entered.is_set():
                await asyncio.sleep(0.001)

            loop.set_continuous(False)
            cleared = loop.detection_state
            self.detector.gate.set()
            stale = await task

            self.assertIs(loop.detection_state, cleared)
            self.assertEqual(stale.object_counts, {"person": 1})
            self.assertEqual(loop.stats['discarded'], 1)

        asyncio.run(scenario())

    def test_stop_while_tick_in_flight(self):
        """测试停止时有循环在执行，执行结束后回到空闲状态"""
        self.detector.gate = threading.Event()
        loop = self.make_loop()

        async def scenario():
            loop.start()
            while not self.detector.entered.is_set():
                await asyncio.sleep(0.001)

            loop.stop()
            self.assertEqual(loop.state, LoopState.CANCELLING)
            self.detector.gate.set()
            await loop.wait_idle()

            self.assertEqual(loop.state, LoopState.IDLE)
            self.assertFalse(loop.has_pending_tick)
            self.assertEqual(loop.stats['published'], 0)

        asyncio.run(scenario())

    def test_restart_while_tick_in_flight_keeps_single_schedule(self):
        """测试循环执行中停止后立即重新启动，只保留一条调度"""
        self.config.tick_interval = 0.5
        self.detector.gate = threading.Event()
        loop = self.make_loop()

        async def scenario():
            loop.start()
            while not self.detector.entered.is_set():
                await asyncio.sleep(0.001)

            with patch.object(loop, '_schedule', wraps=loop._schedule) as schedule:
                loop.stop()
                loop.start()
                self.assertEqual(loop.state, LoopState.RUNNING)
                self.assertFalse(loop.has_pending_tick)
                schedule.assert_not_called()

                self.detector.gate.set()
                await loop.wait_idle()

                self.assertEqual(schedule.call_count, 1)
                self.assertTrue(loop.has_pending_tick)
                self.assertEqual(loop.stats['discarded'], 1)

            loop.stop()
            self.assertFalse(loop.has_pending_tick)
            self.assertEqual(loop.state, LoopState.IDLE)

        asyncio.run(scenario())

    def test_wait_idle_waits_for_running_tick(self):
        """测试 wait_idle 等到正在执行的循环结束才返回"""
        self.detector.gate = threading.Event()
        loop = self.make_loop()

        async def scenario():
            loop.start()
            while not self.detector.entered.is_set():
                await asyncio.sleep(0.001)
            loop.stop()

            waiter = asyncio.create_task(loop.wait_idle())
            await asyncio.sleep(0.02)
            self.assertFalse(waiter.done())
            self.assertEqual(loop.state, LoopState.CANCELLING)

            self.detector.gate.set()
            await waiter
            self.assertEqual(loop.state, LoopState.IDLE)
            self.assertEqual(loop.stats['discarded'], 1)

        asyncio.run(scenario())

    def test_inference_errors_back_off_and_continue(self):
        """测试推理失败后退避并继续循环"""
        self.detector.candidates = [person()]
        self.detector.failures = 2
        loop = self.make_loop()

        asyncio.run(loop.run_for(0.1))

        self.assertEqual(loop.stats['errors'], 2)
        self.assertGreater(loop.stats['published'], 0)
        self.assertEqual(loop.object_counts, {"person": 1})
        failures = [line for line in self.sink.lines() if "循环失败" in line]
        self.assertEqual(len(failures), 2)

    def test_missing_detector_reported_once(self):
        """测试通用检测器不可用时只报告一次并停止调度"""
        self.detector.is_loaded = False
        loop = self.make_loop()

        asyncio.run(loop.run_for(0.05))

        self.assertFalse(loop.detector_available)
        self.assertEqual(loop.stats['errors'], 1)
        self.assertEqual(len(self.sink.lines()), 1)
        self.assertEqual(loop.state, LoopState.IDLE)

    def test_frame_not_ready_keeps_loop_alive(self):
        """测试帧暂未就绪时循环继续，帧就绪后恢复发布"""
        source = ImageFrameSource()
        loop = self.make_loop(frame_source=source)

        async def scenario():
            loop.start()
            await asyncio.sleep(0.03)
            self.assertEqual(loop.stats['published'], 0)
            self.assertEqual(loop.state, LoopState.RUNNING)

            source.set_image(FRAME_PIXELS)
            await asyncio.sleep(0.05)
            loop.stop()
            await loop.wait_idle()

        asyncio.run(scenario())

        self.assertGreater(loop.stats['published'], 0)
        self.assertEqual(self.sink.lines(), [])


if __name__ == '__main__':
    unittest.main()
