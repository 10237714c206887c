from culture_crm import create_app

app = create_app()
