"""产出物管理模块。

目录结构：
output/<project>/
├── artifacts/                # 构件 JSON
│   ├── worldview.json
│   └── ...
├── meta/                     # 生成元数据
├── conflicts/                # 冲突扫描报告
└── metadata.json             # 生成日志与 token 统计
"""

from lorekeeper.output.manager import ArtifactOutputManager

__all__ = ["ArtifactOutputManager"]
