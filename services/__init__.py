"""
服務層

這個 package 包含計算與查詢邏輯，不負責狀態轉換：
- pricing_service：報價與升等費用
- waitlist_service：排隊位置、ETA、需求數量
- inventory_service：資源等級查詢
- visit_service：時段與續租規則
- identity_service：客人識別與資格
- policy_service：主管 PIN 驗證
- broadcast_service：lane channel 廣播與完整狀態 projection
- audit_service / agreement_renderer / time_service
"""
