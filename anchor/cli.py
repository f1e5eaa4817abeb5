from __future__ import annotations
from typing import Optional
import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .auth import find_user_by_email, register_user
from .config import Settings
from .db import init_db
from .errors import NotFound, ValidationFailure
from .log import configure_logging
from .models import User
from .services import create_note, list_notes, get_note, update_note, delete_note
from .viewmodel import content_preview, time_ago

app = typer.Typer(help="Anchor: notes that sync across devices")
console = Console()

@app.callback()
def _boot():
    configure_logging(Settings.from_env().log_level)
    init_db()

def _user(email: str) -> User:
    user = find_user_by_email(email)
    if not user:
        console.print(f"[red]No such user[/]: {email}")
        raise typer.Exit(1)
    return user

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    settings = Settings.from_env()
    uvicorn.run(
        "anchor.app:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )

@app.command()
def register(
    username: str = typer.Option(..., "--username", "-u"),
    email: str = typer.Option(..., "--email", "-e"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
):
    try:
        user = register_user(username, email, password)
    except ValidationFailure as e:
        console.print(f"[red]{e.message}[/]")
        raise typer.Exit(1)
    console.print(f"[green]Registered[/] {user.username} <{user.email}>")

@app.command()
def add(
    email: str = typer.Option(..., "--email", "-e"),
    title: str = typer.Option("", "--title", "-t"),
    content: str = typer.Option("", "--content", "-c"),
):
    n = create_note(_user(email).id, title, content)
    console.print(f"[green]Created[/] {n.id}: {n.title}")

@app.command("list")
def _list(
    email: str = typer.Option(..., "--email", "-e"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(10, "--limit", min=1, max=100),
):
    notes, has_more = list_notes(_user(email).id, page, limit)
    table = Table(title=f"Anchor, page {page}")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Preview")
    table.add_column("Updated")
    for n in notes:
        table.add_row(n.id, n.title, content_preview(n.content), time_ago(n.updated_at))
    console.print(table)
    if has_more:
        console.print(f"[dim]more on page {page + 1}[/]")

@app.command()
def show(identifier: str, email: str = typer.Option(..., "--email", "-e")):
    try:
        n = get_note(_user(email).id, identifier)
    except NotFound:
        console.print(f"[red]Not found[/]: {identifier}")
        raise typer.Exit(1)
    console.rule(f"{n.title}")
    console.print(f"[dim]{n.id} · updated {time_ago(n.updated_at)}[/]")
    console.print(n.content or "[dim]<empty>[/]")

@app.command()
def edit(
    identifier: str,
    email: str = typer.Option(..., "--email", "-e"),
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    content: Optional[str] = typer.Option(None, "--content", "-c"),
):
    owner_id = _user(email).id
    try:
        current = get_note(owner_id, identifier)
        n = update_note(
            owner_id,
            identifier,
            title=current.title if title is None else title,
            content=current.content if content is None else content,
        )
    except NotFound:
        console.print(f"[red]Not found[/]: {identifier}")
        raise typer.Exit(1)
    console.print(f"[green]Updated[/] {n.id}: {n.title}")

@app.command()
def delete(identifier: str, email: str = typer.Option(..., "--email", "-e")):
    try:
        delete_note(_user(email).id, identifier)
    except NotFound:
        console.print(f"[red]Not found[/]: {identifier}")
        raise typer.Exit(1)
    console.print(f"[yellow]Deleted[/] {identifier}")

def main():
    app()

if __name__ == "__main__":
    main()
