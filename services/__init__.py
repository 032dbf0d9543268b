"""
服務層

這個 package 包含不負責狀態轉換的邏輯：
- PayoutService：顏色對照與派彩計算
- BalanceStore：餘額異動（冪等、不 commit）
- HistoryService：回合與注單的唯讀查詢
"""
