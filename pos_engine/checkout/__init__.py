"""注文確定 (Order Commit)"""
