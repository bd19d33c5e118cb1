"""注文 — ヘッダ/明細の保存、履歴照会、返金"""
