"""
配置管理模块

提供配置文件读取、命令行参数解析和配置验证功能。
支持 YAML 配置文件和命令行参数，实现配置参数优先级处理。
"""

import argparse
import os
import yaml
from dataclasses import asdict, fields
from typing import Dict, List, Optional, Any

from models.data_models import Config
from models.interfaces import IConfigManager
from models.exceptions import ConfigurationError


# 固定策略，配置文件和命令行都不能覆盖
FIXED_POLICY = {
    'min_examples_per_class': 5,
    'min_classes': 2
}

# 配置文件中嵌套段落到配置字段的映射
SECTION_KEYS = {
    'detection': {
        'source': 'source',
        'model_path': 'model_path',
        'confidence_threshold': 'confidence_threshold',
        'acceptance_threshold': 'acceptance_threshold',
        'input_size': 'input_size'
    },
    'training': {
        'epochs': 'epochs',
        'batch_size': 'batch_size',
        'validation_fraction': 'validation_fraction',
        'learning_rate': 'learning_rate'
    },
    'loop': {
        'tick_interval': 'tick_interval',
        'retry_backoff': 'retry_backoff',
        'max_frame_retries': 'max_frame_retries',
        'continuous': 'continuous'
    },
    'storage': {
        'model_key': 'model_key',
        'directory': 'model_store_dir'
    },
    'logging': {
        'level': 'log_level',
        'file_path': 'log_file_path',
        'enable_console': 'enable_console_log'
    }
}


class ConfigManager(IConfigManager):
    """配置管理器实现类

    负责处理配置文件和命令行参数，提供统一的配置访问接口。
    实现配置参数优先级：命令行参数 > 配置文件 > 默认值
    """

    def __init__(self, config_path: Optional[str] = None, args: Optional[List[str]] = None):
        """初始化配置管理器

        Args:
            config_path: 配置文件路径，默认为 config.yaml
            args: 命令行参数列表，默认使用 sys.argv
        """
        self.config_path = config_path or "config.yaml"
        self.args = args
        self._config: Optional[Config] = None
        self._file_config: Dict[str, Any] = {}
        self._cmd_args: Optional[argparse.Namespace] = None

    def load_config(self) -> Config:
        """加载配置信息

        按优先级合并配置：命令行参数 > 配置文件 > 默认值

        Returns:
            Config: 完整的配置对象

        Raises:
            ConfigurationError: 配置加载或验证失败时抛出
        """
        try:
            # 1. 解析命令行参数（先解析以获取可能的配置文件路径）
            self._parse_command_line()

            # 2. 加载配置文件
            self._load_config_file()

            # 3. 合并配置并验证
            merged_config = self._merge_configurations()
            self._config = self._create_and_validate_config(merged_config)

            return self._config

        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"配置加载失败: {str(e)}") from e

    def _load_config_file(self) -> None:
        """加载 YAML 配置文件

        Raises:
            ConfigurationError: 配置文件格式错误或读取失败时抛出
        """
        if not os.path.exists(self.config_path):
            # 配置文件不存在时使用空配置，不报错
            self._file_config = {}
            return

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"配置文件格式错误: {str(e)}", self.config_path) from e
        except OSError as e:
            raise ConfigurationError(f"无法读取配置文件: {str(e)}", self.config_path) from e

        if not isinstance(self._file_config, dict):
            raise ConfigurationError("配置文件顶层必须是映射", self.config_path)

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        """创建命令行参数解析器"""
        parser = argparse.ArgumentParser(
            description="自定义物体检测系统",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
使用示例:
  python main.py detect --source 0 --confidence 0.6
  python main.py detect --source photo.jpg --single-shot
  python main.py train --data-dir samples/ --epochs 20
            """
        )

        parser.add_argument('command', nargs='?', choices=['detect', 'train'], default='detect',
                            help='运行模式: detect 实时检测, train 训练自定义模型')
        parser.add_argument('--source', '-s', type=str, help='帧源: 摄像头编号或图片/视频路径')
        parser.add_argument('--model', type=str, help='通用检测模型文件路径')
        parser.add_argument('--confidence', '-c', type=float, help='检测置信度阈值 (0.0-1.0)')
        parser.add_argument('--acceptance', type=float, help='样例匹配接受阈值 (0.0-1.0)')
        parser.add_argument('--config', type=str, help='配置文件路径')
        parser.add_argument('--single-shot', action='store_true', help='只检测一次，不进入实时循环')
        parser.add_argument('--duration', type=float, default=None, help='实时检测持续时间（秒）')
        parser.add_argument('--data-dir', type=str, help='训练样本目录，每个子目录为一个类别')
        parser.add_argument('--epochs', type=int, help='训练轮数')
        parser.add_argument('--batch-size', type=int, help='训练批大小')
        parser.add_argument('--validation-fraction', type=float, help='验证集比例')
        parser.add_argument('--model-key', type=str, help='自定义模型的存储键')
        parser.add_argument('--store-dir', type=str, help='自定义模型存储目录')
        parser.add_argument('--log-level', type=str,
                            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                            help='日志级别')
        parser.add_argument('--log-file', type=str, help='日志文件路径')
        parser.add_argument('--no-console-log', action='store_true', help='禁用控制台日志输出')
        return parser

    def _parse_command_line(self) -> None:
        """解析命令行参数"""
        parser = self.build_parser()
        if self.args is not None:
            self._cmd_args = parser.parse_args(self.args)
        else:
            self._cmd_args = parser.parse_args()

        if self._cmd_args.config:
            self.config_path = self._cmd_args.config

    @property
    def command_args(self) -> Optional[argparse.Namespace]:
        """解析后的命令行参数"""
        return self._cmd_args

    def _merge_configurations(self) -> Dict[str, Any]:
        """合并配置参数

        优先级：命令行参数 > 配置文件 > 默认值

        Returns:
            Dict[str, Any]: 合并后的配置字典
        """
        merged = asdict(Config())
        known_keys = {f.name for f in fields(Config)}

        if self._file_config:
            # 嵌套段落
            for section, mapping in SECTION_KEYS.items():
                section_config = self._file_config.get(section)
                if not isinstance(section_config, dict):
                    continue
                for file_key, config_key in mapping.items():
                    if file_key in section_config:
                        merged[config_key] = section_config[file_key]

            # 顶层配置
            for key, value in self._file_config.items():
                if key in known_keys:
                    merged[key] = value

        if self._cmd_args:
            cmd = self._cmd_args
            overrides = {
                'source': cmd.source,
                'model_path': cmd.model,
                'confidence_threshold': cmd.confidence,
                'acceptance_threshold': cmd.acceptance,
                'epochs': cmd.epochs,
                'batch_size': cmd.batch_size,
                'validation_fraction': cmd.validation_fraction,
                'model_key': cmd.model_key,
                'model_store_dir': cmd.store_dir,
                'log_level': cmd.log_level,
                'log_file_path': cmd.log_file
            }
            for key, value in overrides.items():
                if value is not None:
                    merged[key] = value
            if cmd.single_shot:
                merged['continuous'] = False
            if cmd.no_console_log:
                merged['enable_console_log'] = False

        merged.update(FIXED_POLICY)
        return merged

    def _create_and_validate_config(self, config_dict: Dict[str, Any]) -> Config:
        """创建并验证配置对象

        Args:
            config_dict: 配置字典

        Returns:
            Config: 验证后的配置对象

        Raises:
            ConfigurationError: 配置验证失败时抛出
        """
        for key in ('confidence_threshold', 'acceptance_threshold'):
            value = config_dict.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not (0.0 < value < 1.0):
                raise ConfigurationError(f"{key} 必须在 0.0-1.0 之间（不含端点）: {value}")

        for key in ('input_size', 'epochs', 'batch_size', 'max_frame_retries'):
            value = config_dict.get(key)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{key} 必须是正整数: {value}")

        fraction = config_dict.get('validation_fraction')
        if isinstance(fraction, bool) or not isinstance(fraction, (int, float)) or not (0.0 <= fraction < 1.0):
            raise ConfigurationError(f"validation_fraction 必须在 [0.0, 1.0) 之间: {fraction}")

        for key in ('learning_rate', 'tick_interval', 'retry_backoff'):
            value = config_dict.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(f"{key} 必须是非负数: {value}")
        if config_dict['learning_rate'] == 0:
            raise ConfigurationError("learning_rate 不能为 0")

        if not config_dict.get('model_key'):
            raise ConfigurationError("model_key 不能为空")

        log_level = str(config_dict.get('log_level', 'INFO'))
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if log_level.upper() not in valid_log_levels:
            raise ConfigurationError(f"无效的日志级别: {log_level}，支持的级别: {valid_log_levels}")

        try:
            return Config(
                source=str(config_dict['source']),
                model_path=config_dict.get('model_path'),
                confidence_threshold=float(config_dict['confidence_threshold']),
                acceptance_threshold=float(config_dict['acceptance_threshold']),
                input_size=int(config_dict['input_size']),
                epochs=int(config_dict['epochs']),
                batch_size=int(config_dict['batch_size']),
                validation_fraction=float(fraction),
                learning_rate=float(config_dict['learning_rate']),
                min_examples_per_class=FIXED_POLICY['min_examples_per_class'],
                min_classes=FIXED_POLICY['min_classes'],
                tick_interval=float(config_dict['tick_interval']),
                retry_backoff=float(config_dict['retry_backoff']),
                max_frame_retries=int(config_dict['max_frame_retries']),
                continuous=bool(config_dict['continuous']),
                model_key=str(config_dict['model_key']),
                model_store_dir=str(config_dict['model_store_dir']),
                log_level=log_level.upper(),
                log_file_path=config_dict.get('log_file_path'),
                enable_console_log=bool(config_dict.get('enable_console_log', True))
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"配置对象创建失败: {str(e)}") from e

    def get_config(self) -> Config:
        """获取完整的配置对象"""
        if self._config is None:
            self.load_config()
        return self._config

    def get_confidence_threshold(self) -> float:
        """获取置信度阈值"""
        return self.get_config().confidence_threshold

    def set_confidence_threshold(self, threshold: float) -> None:
        """由操作者调整置信度阈值

        Args:
            threshold: 新的置信度阈值 (0.0 - 1.0，不含端点)

        Raises:
            ConfigurationError: 阈值超出范围时抛出
        """
        if not 0.0 < threshold < 1.0:
            raise ConfigurationError(f"置信度阈值必须在 0.0-1.0 之间（不含端点）: {threshold}")
        self.get_config().confidence_threshold = float(threshold)
