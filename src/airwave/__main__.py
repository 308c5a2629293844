# src/airwave/__main__.py
from airwave.main import run

run()
