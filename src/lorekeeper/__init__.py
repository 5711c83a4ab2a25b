"""lorekeeper：小说设定构件生成流水线与检索子系统。"""

__version__ = "0.1.0"
