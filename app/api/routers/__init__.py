"""
FastAPI routers for the import workflow.

uploads   - receive and process files
mapping   - destination catalog, suggestions and column mapping
workflows - step navigation, validation, deployment and cancellation
"""
