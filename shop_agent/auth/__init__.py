"""客户账户授权。"""
