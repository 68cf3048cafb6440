"""Campus ballot: student election voting backend."""

__version__ = '1.0.0'
