"""在庫台帳 (Stock Ledger)"""
