"""核心公共类型（错误分类、进程查找）。"""
