"""
核心業務邏輯層

這個 package 包含回合引擎的核心邏輯，包括：
- 時鐘與格線：營運時區、5 分鐘回合、round_id
- 狀態機：回合狀態與結算狀態的條件式轉換
- Manager：回合、結算、下注、錢包
- Scheduler：每分鐘 tick 與每回合鬧鐘
- Locks：並發控制工具
"""
