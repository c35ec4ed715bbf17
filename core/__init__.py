"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理 LaneSession 的狀態轉換
- Manager：session、選擇協商、資源指派、付款、簽約
- Locks：並發控制工具
- Exceptions：封閉的錯誤種類與異常階層
"""
