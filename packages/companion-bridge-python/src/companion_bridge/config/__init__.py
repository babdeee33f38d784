"""配置（默认 YAML + overlay + pydantic 校验）。"""
