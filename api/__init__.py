"""
API 層

FastAPI routers，只負責 HTTP 轉換，業務邏輯都在 core：
- rounds：模式、回合查詢與下注
- players：玩家注單與錢包
- admin：手動開獎、結算重試、即時統計、卡住的回合
"""
