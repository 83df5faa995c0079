"""
配置管理器单元测试

测试 ConfigManager 类的各种功能，包括配置文件解析、命令行参数处理、
默认值、固定策略和参数校验。
"""

import pytest
import tempfile
import os
import shutil
import yaml
from dataclasses import asdict

from utils.config_manager import ConfigManager, FIXED_POLICY
from models.data_models import Config
from models.exceptions import ConfigurationError


class TestConfigManager:
    """ConfigManager 类的单元测试"""

    def setup_method(self):
        """每个测试方法执行前的设置"""
        self.temp_dir = tempfile.mkdtemp()
        self.test_config_path = os.path.join(self.temp_dir, "test_config.yaml")
        self.missing_config_path = os.path.join(self.temp_dir, "missing.yaml")

    def teardown_method(self):
        """每个测试方法执行后的清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def create_test_config_file(self, config_data: dict):
        """创建测试配置文件"""
        with open(self.test_config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)

    def manager_with(self, args, config_path=None) -> ConfigManager:
        return ConfigManager(config_path=config_path or self.missing_config_path, args=args)

    def test_init_with_default_config_path(self):
        """测试使用默认配置文件路径初始化"""
        manager = ConfigManager()
        assert manager.config_path == "config.yaml"
        assert manager.args is None

    def test_load_config_file_success(self):
        """测试成功加载配置文件"""
        config_data = {
            'detection': {'confidence_threshold': 0.7},
            'training': {'epochs': 5}
        }
        self.create_test_config_file(config_data)

        manager = ConfigManager(config_path=self.test_config_path)
        manager._load_config_file()

        assert manager._file_config == config_data

    def test_load_config_file_not_exists(self):
        """测试配置文件不存在时使用空配置"""
        manager = ConfigManager(config_path=self.missing_config_path)
        manager._load_config_file()

        assert manager._file_config == {}

    def test_load_config_file_invalid_yaml(self):
        """测试无效的 YAML 配置文件"""
        with open(self.test_config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        manager = ConfigManager(config_path=self.test_config_path)

        with pytest.raises(ConfigurationError) as exc_info:
            manager._load_config_file()

        assert "配置文件格式错误" in str(exc_info.value)

    def test_load_config_file_not_mapping(self):
        """测试顶层不是映射的配置文件"""
        with open(self.test_config_path, 'w') as f:
            f.write("- 0.5\n- 0.7\n")

        manager = ConfigManager(config_path=self.test_config_path)

        with pytest.raises(ConfigurationError):
            manager._load_config_file()

    def test_parse_command_line_detect(self):
        """测试检测模式命令行参数解析"""
        manager = self.manager_with(["--source", "1", "--confidence", "0.3", "--single-shot"])
        manager._parse_command_line()

        args = manager.command_args
        assert args.command == "detect"
        assert args.source == "1"
        assert args.confidence == 0.3
        assert args.single_shot is True

    def test_parse_command_line_train(self):
        """测试训练模式命令行参数解析"""
        manager = self.manager_with(["train", "--data-dir", "samples", "--epochs", "20",
                                     "--batch-size", "8", "--model-key", "mugs"])
        manager._parse_command_line()

        args = manager.command_args
        assert args.command == "train"
        assert args.data_dir == "samples"
        assert args.epochs == 20
        assert args.batch_size == 8
        assert args.model_key == "mugs"

    def test_merge_configurations_defaults_only(self):
        """测试仅使用默认配置"""
        manager = ConfigManager()
        manager._file_config = {}
        manager._cmd_args = None

        merged = manager._merge_configurations()

        assert merged == asdict(Config())

    def test_merge_configurations_file_sections(self):
        """测试配置文件的嵌套段落"""
        manager = ConfigManager()
        manager._file_config = {
            'detection': {'confidence_threshold': 0.4, 'acceptance_threshold': 0.8},
            'training': {'epochs': 3, 'validation_fraction': 0.0},
            'loop': {'continuous': False},
            'storage': {'directory': '/tmp/models'},
            'logging': {'level': 'DEBUG'}
        }
        manager._cmd_args = None

        merged = manager._merge_configurations()

        assert merged['confidence_threshold'] == 0.4
        assert merged['acceptance_threshold'] == 0.8
        assert merged['epochs'] == 3
        assert merged['validation_fraction'] == 0.0
        assert merged['continuous'] is False
        assert merged['model_store_dir'] == '/tmp/models'
        assert merged['log_level'] == 'DEBUG'

    def test_fixed_policy_cannot_be_overridden(self):
        """测试最少样本数和最少类别数不能被配置覆盖"""
        manager = ConfigManager()
        manager._file_config = {
            'min_examples_per_class': 1,
            'min_classes': 1,
            'training': {'min_examples_per_class': 2}
        }
        manager._cmd_args = None

        merged = manager._merge_configurations()

        assert merged['min_examples_per_class'] == FIXED_POLICY['min_examples_per_class']
        assert merged['min_classes'] == FIXED_POLICY['min_classes']

    def test_merge_configurations_cmd_args_priority(self):
        """测试命令行参数最高优先级"""
        manager = self.manager_with(["--confidence", "0.9"])
        manager._file_config = {'detection': {'confidence_threshold': 0.7}}
        manager._parse_command_line()

        merged = manager._merge_configurations()

        assert merged['confidence_threshold'] == 0.9

    def test_create_and_validate_config_success(self):
        """测试成功创建和验证配置"""
        config_dict = asdict(Config())
        config_dict.update({'confidence_threshold': 0.6, 'epochs': 4, 'log_level': 'debug'})

        config = ConfigManager()._create_and_validate_config(config_dict)

        assert isinstance(config, Config)
        assert config.confidence_threshold == 0.6
        assert config.epochs == 4
        assert config.log_level == 'DEBUG'

    @pytest.mark.parametrize("key,value", [
        ('confidence_threshold', 0.0),
        ('confidence_threshold', 1.0),
        ('acceptance_threshold', 1.5),
        ('epochs', 0),
        ('batch_size', -1),
        ('input_size', 2.5),
        ('validation_fraction', 1.0),
        ('learning_rate', 0),
        ('retry_backoff', -0.1),
        ('model_key', ''),
        ('log_level', 'VERBOSE'),
    ])
    def test_create_and_validate_config_rejects(self, key, value):
        """测试无效配置值"""
        config_dict = asdict(Config())
        config_dict[key] = value

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager()._create_and_validate_config(config_dict)

        error = exc_info.value
        assert error.error_code == "CONFIGURATION_ERROR"
        assert error.suggestions

    def test_load_config_integration(self):
        """测试完整的配置加载流程"""
        self.create_test_config_file({
            'detection': {'confidence_threshold': 0.7},
            'training': {'epochs': 15}
        })

        manager = ConfigManager(config_path=self.test_config_path,
                                args=["--single-shot", "--epochs", "2"])
        config = manager.load_config()

        assert config.confidence_threshold == 0.7  # 来自配置文件
        assert config.epochs == 2  # 来自命令行
        assert config.continuous is False
        assert config.acceptance_threshold == 0.7  # 默认值
        assert config.min_examples_per_class == 5

    def test_config_with_custom_config_file_path(self):
        """测试通过命令行指定配置文件路径"""
        custom_config_path = os.path.join(self.temp_dir, "custom.yaml")
        with open(custom_config_path, 'w', encoding='utf-8') as f:
            yaml.dump({'detection': {'confidence_threshold': 0.9}}, f)

        manager = self.manager_with(["--config", custom_config_path])
        config = manager.load_config()

        assert config.confidence_threshold == 0.9
        assert manager.config_path == custom_config_path

    def test_get_confidence_threshold(self):
        """测试获取置信度阈值"""
        manager = self.manager_with(["--confidence", "0.8"])

        assert manager.get_confidence_threshold() == 0.8

    def test_set_confidence_threshold(self):
        """测试操作者调整置信度阈值"""
        manager = self.manager_with([])

        manager.set_confidence_threshold(0.3)
        assert manager.get_confidence_threshold() == 0.3

        with pytest.raises(ConfigurationError):
            manager.set_confidence_threshold(1.2)
        assert manager.get_confidence_threshold() == 0.3


if __name__ == "__main__":
    pytest.main([__file__])
