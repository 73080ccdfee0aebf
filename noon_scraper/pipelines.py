import json
from scrapy.exceptions import DropItem
from itemadapter import ItemAdapter


class JsonLinesWriterPipeline:
    """Sink: one JSON object per product, one product per line."""

    def open_spider(self, spider):
        self.file = open(spider.settings.get('OUTPUT_JSONL', 'products.jsonl'), 'w', encoding='utf-8')
        self.written = 0

    def close_spider(self, spider):
        self.file.close()
        spider.logger.info("Wrote %d products to %s", self.written, self.file.name)

    def process_item(self, item, spider):
        adapter = ItemAdapter(item)
        if not adapter.get('url') or not adapter.get('title'):
            raise DropItem("Missing url or title in %s" % item)
        line = json.dumps(adapter.asdict(), ensure_ascii=False)
        self.file.write(line + '\n')
        self.file.flush()
        self.written += 1
        return item
