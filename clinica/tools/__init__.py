"""Script di manutenzione del DB (da lanciare con python -m clinica.tools.<nome>)."""
