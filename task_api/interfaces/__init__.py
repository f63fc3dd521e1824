"""層間インターフェース定義。

API層はこのパッケージの抽象クラスにのみ依存する。
task_api/store/ の実装に直接依存してはならない。
"""
