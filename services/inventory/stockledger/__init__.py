"""
Stock Ledger — 鮮魚市場の在庫台帳エンジン

品目ごとの正となる在庫数、追記専用の監査台帳、
しきい値による在庫ステータス、変更のリアルタイム通知を扱う。
"""
