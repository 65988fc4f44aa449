"""引擎核心：缓存、模板解析、信息征询、错误处理与编排"""
