"""
API 層

這個 package 只負責 HTTP / WebSocket 的轉換，業務邏輯在 core/：
- checkin：lane 上的所有操作
- payments：以付款意圖 ID 為準的操作
- websocket：lane channel 訂閱
"""
