"""
POS Order Engine

カートから注文を確定(commit)するためのエンジン。
価格計算・在庫台帳・採番・注文確定コーディネーター・注文履歴/返金を提供する。
"""

__version__ = "0.1.0"
