"""
核心業務邏輯層

這個 package 包含所有會改變狀態的元件：
- GameModeRegistry：唯讀的模式目錄
- RoundClock：回合時序與當前期指標
- BetLedger：下注與凍結的注單集合
- ResultResolver：手動或自動開獎
- SettlementEngine：派彩並關閉回合
- RoundScheduler：背景鎖盤、結算重試、卡住告警
- 狀態機與 Locks：狀態轉換與並發控制
"""
