"""
服務層

這個 package 包含不負責狀態轉換的邏輯：
- CardSelection：開獎卡片選擇（純計算）
- Barcode：注單條碼產生與驗證（純計算）
- Aggregate：排除取消注單的統計
- Settings / Audit / Auth：設定、稽核、登入
"""
