"""
Backend applicativo Clinica.

Struttura:
- config.py     : configurazione da variabili d'ambiente (.env)
- db.py         : engine e sessioni SQLAlchemy
- models.py     : modelli ORM e enum
- workflow.py   : macchina a stati degli appuntamenti e ordinamento della fila
- financial.py  : ripartizione clinica/professionista
- services.py   : logica di dominio (anagrafiche, agenda, fila, chiusura visita)
- reports.py    : report finanziari
- seed.py       : dati iniziali (utenti, medico, procedure)
- api_main.py   : API REST (FastAPI + JWT)
- cli.py        : operazioni da riga di comando
"""
