"""Curated work lists for cache warming."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from bookproxy.internal.models import ProviderRequest, RequestType

SEARCH_PAGE_SIZE = 20

HISTORICAL_BESTSELLERS: dict[str, list[tuple[str, str, str]]] = {
    "classics": [
        ("To Kill a Mockingbird", "Harper Lee", "9780061120084"),
        ("1984", "George Orwell", "9780547249643"),
        ("Pride and Prejudice", "Jane Austen", "9780141439518"),
        ("The Great Gatsby", "F. Scott Fitzgerald", "9780743273565"),
        ("One Hundred Years of Solitude", "Gabriel García Márquez", "9780060883287"),
        ("Beloved", "Toni Morrison", "9781400033416"),
        ("The Catcher in the Rye", "J.D. Salinger", "9780316769174"),
        ("Lord of the Flies", "William Golding", "9780571056866"),
        ("Jane Eyre", "Charlotte Brontë", "9780141441146"),
        ("Wuthering Heights", "Emily Brontë", "9780141439556"),
    ],
    "contemporary": [
        ("The Seven Husbands of Evelyn Hugo", "Taylor Jenkins Reid", "9781501161933"),
        ("Where the Crawdads Sing", "Delia Owens", "9780735219090"),
        ("The Silent Patient", "Alex Michaelides", "9781250301697"),
        ("Educated", "Tara Westover", "9780399590504"),
        ("The Handmaid's Tale", "Margaret Atwood", "9780385490818"),
        ("The Kite Runner", "Khaled Hosseini", "9781594631931"),
        ("Gone Girl", "Gillian Flynn", "9780307588364"),
        ("The Girl with the Dragon Tattoo", "Stieg Larsson", "9780307454546"),
        ("Life of Pi", "Yann Martel", "9780156027328"),
        ("The Book Thief", "Markus Zusak", "9780375842207"),
    ],
    "diverse_voices": [
        ("Americanah", "Chimamanda Ngozi Adichie", "9780307455925"),
        ("The Joy Luck Club", "Amy Tan", "9780143038092"),
        ("Persepolis", "Marjane Satrapi", "9780375714573"),
        ("The Namesake", "Jhumpa Lahiri", "9780618485222"),
        ("Homegoing", "Yaa Gyasi", "9781101971062"),
        ("The Sellout", "Paul Beatty", "9780374260507"),
        ("Exit West", "Mohsin Hamid", "9780735212183"),
        ("The Sympathizer", "Viet Thanh Nguyen", "9780802123459"),
        ("There There", "Tommy Orange", "9780525520375"),
        ("An American Marriage", "Tayari Jones", "9781616201340"),
    ],
}

POPULAR_AUTHORS = [
    "Stephen King",
    "J.K. Rowling",
    "Agatha Christie",
    "Shakespeare",
    "Jane Austen",
    "Toni Morrison",
    "Gabriel García Márquez",
    "George Orwell",
    "Virginia Woolf",
    "James Joyce",
    "Chimamanda Ngozi Adichie",
    "Haruki Murakami",
    "Margaret Atwood",
    "Gillian Flynn",
    "Dan Brown",
]

NEW_RELEASE_SUBJECTS = ["fiction", "literary fiction", "biography", "history", "science"]


@dataclass(frozen=True)
class WarmItem:
    id: str
    request_type: RequestType
    query: str | None = None
    isbn: str | None = None
    sort_by: str = "relevance"

    def to_request(self) -> ProviderRequest:
        return ProviderRequest(
            id=self.id,
            request_type=self.request_type,
            query=self.query,
            isbn=self.isbn,
            max_results=SEARCH_PAGE_SIZE,
            sort_by=self.sort_by,
        )


def isbn_item(isbn: str) -> WarmItem:
    return WarmItem(id=f"isbn:{isbn}", request_type=RequestType.isbn, isbn=isbn)


def search_item(item_id: str, query: str, sort_by: str = "relevance") -> WarmItem:
    return WarmItem(id=item_id, request_type=RequestType.search, query=query, sort_by=sort_by)


def historical_segments(now: float) -> dict[str, list[WarmItem]]:
    return {
        name: [isbn_item(isbn) for _, _, isbn in books]
        for name, books in HISTORICAL_BESTSELLERS.items()
    }


def author_segments(now: float) -> dict[str, list[WarmItem]]:
    return {
        "authors": [
            search_item(f"author:{name.lower()}", f'inauthor:"{name}"') for name in POPULAR_AUTHORS
        ]
    }


def new_release_segments(now: float, days: int = 7) -> dict[str, list[WarmItem]]:
    end = datetime.fromtimestamp(now, tz=timezone.utc).date()
    start = end - timedelta(days=days)
    return {
        "subjects": [
            search_item(
                f"new:{subject}:{start.isoformat()}",
                f'subject:"{subject}" publishedDate:{start.isoformat()}..{end.isoformat()}',
                sort_by="newest",
            )
            for subject in NEW_RELEASE_SUBJECTS
        ]
    }


def bootstrap_segments(now: float) -> dict[str, list[WarmItem]]:
    return {**historical_segments(now), **author_segments(now)}
