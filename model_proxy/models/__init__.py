"""数据模型：统一消息格式、各服务商线上格式与错误响应"""
