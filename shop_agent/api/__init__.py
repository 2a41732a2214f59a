"""HTTP API：FastAPI 应用与服务组装。"""
