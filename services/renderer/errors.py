class ReaderError(RuntimeError):
    pass


class FetchError(ReaderError):
    pass


class ExtractionError(ReaderError):
    pass


class ImageFetchError(ReaderError):
    pass


class ArchiveError(ReaderError):
    pass


class ExportCancelled(ReaderError):
    pass


class NotFound(ReaderError, LookupError):
    pass


class ArticleNotFound(NotFound):
    def __init__(self, article_id: str):
        super().__init__(f"Article not found: {article_id}")
        self.article_id = article_id
