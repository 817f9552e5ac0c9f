"""샌드박스 VM 수명주기 제어 평면(control plane) 패키지."""

__version__ = "0.1.0"
